"""
Entitlement Service - decides whether a user may receive another persona reply
"""
import enum
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.message import MessageRepository
from crud.subscription import SubscriptionRepository
from database_models import User, SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIALING

logger = logging.getLogger(__name__)

ENTITLED_SUBSCRIPTION_STATUSES = (SUBSCRIPTION_ACTIVE, SUBSCRIPTION_TRIALING)


class EntitlementDecision(str, enum.Enum):
    ALLOWED_FREE = "allowed-free"
    ALLOWED_VIA_CREDIT = "allowed-via-credit"
    ALLOWED_VIA_SUBSCRIPTION = "allowed-via-subscription"
    ALLOWED_VIA_LIFETIME = "allowed-via-lifetime"
    BLOCKED_FREE_QUOTA_EXCEEDED = "blocked-free-quota-exceeded"
    BLOCKED_NO_CREDITS = "blocked-no-credits"

    @property
    def allowed(self) -> bool:
        return self.value.startswith("allowed")

    @property
    def consumes_credit(self) -> bool:
        return self is EntitlementDecision.ALLOWED_VIA_CREDIT

    @property
    def error_kind(self) -> Optional[str]:
        """Error kind reported to the client for a blocked decision."""
        if self is EntitlementDecision.BLOCKED_FREE_QUOTA_EXCEEDED:
            return "free-quota-exceeded"
        if self is EntitlementDecision.BLOCKED_NO_CREDITS:
            return "no-credits"
        return None


def resolve_entitlement(
    *,
    lifetime_access: bool,
    subscription_status: Optional[str],
    user_turns: int,
    credits: int,
    has_paid_history: bool,
    free_quota: int,
) -> EntitlementDecision:
    """
    Pure entitlement decision. Order matters: lifetime, then subscription,
    then free quota, then credits.

    Args:
        lifetime_access: User's lifetime flag
        subscription_status: Status from the subscription snapshot, or None
        user_turns: User-sent messages so far, across all personas
        credits: Current credit balance
        has_paid_history: Whether the user ever became a paying customer
        free_quota: Number of free user turns

    Returns:
        The EntitlementDecision. ALLOWED_VIA_CREDIT obliges the caller to debit one credit.
    """
    if lifetime_access:
        return EntitlementDecision.ALLOWED_VIA_LIFETIME
    if subscription_status in ENTITLED_SUBSCRIPTION_STATUSES:
        return EntitlementDecision.ALLOWED_VIA_SUBSCRIPTION
    if user_turns < free_quota:
        return EntitlementDecision.ALLOWED_FREE
    if credits > 0:
        return EntitlementDecision.ALLOWED_VIA_CREDIT
    if has_paid_history:
        return EntitlementDecision.BLOCKED_NO_CREDITS
    return EntitlementDecision.BLOCKED_FREE_QUOTA_EXCEEDED


def _has_paid_history(user: User, subscription) -> bool:
    return bool(user.stripe_customer_id) or subscription is not None


class EntitlementService:
    """Loads billing state for a user and applies resolve_entitlement to it."""

    def __init__(self, db: AsyncSession, free_quota: Optional[int] = None):
        self.db = db
        self.messages = MessageRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.free_quota = settings.free_quota if free_quota is None else free_quota

    async def _state(self, user: User) -> dict:
        subscription = await self.subscriptions.get_for_user(user.id)
        user_turns = await self.messages.count_user_turns(user.id)
        return {
            "subscription": subscription,
            "user_turns": user_turns,
        }

    def _decide(self, user: User, state: dict) -> EntitlementDecision:
        subscription = state["subscription"]
        return resolve_entitlement(
            lifetime_access=bool(user.lifetime_access),
            subscription_status=subscription.status if subscription else None,
            user_turns=state["user_turns"],
            credits=user.credits,
            has_paid_history=_has_paid_history(user, subscription),
            free_quota=self.free_quota,
        )

    async def resolve(self, user: User) -> EntitlementDecision:
        """Decision for the user's next message. Has no side effects."""
        decision = self._decide(user, await self._state(user))
        logger.debug(f"Entitlement for user {user.id}: {decision.value}")
        return decision

    async def resolve_exhausted(self, user: User) -> EntitlementDecision:
        """
        Blocked decision for a user whose last credit was spent by a concurrent
        request between resolve and debit. The kind follows the same
        paid-history rule as resolve.
        """
        subscription = await self.subscriptions.get_for_user(user.id)
        return resolve_entitlement(
            lifetime_access=False,
            subscription_status=None,
            user_turns=self.free_quota,
            credits=0,
            has_paid_history=_has_paid_history(user, subscription),
            free_quota=self.free_quota,
        )

    async def describe(self, user: User) -> dict:
        """Entitlement summary for the billing status endpoint."""
        state = await self._state(user)
        subscription = state["subscription"]
        decision = self._decide(user, state)
        return {
            "decision": decision.value,
            "allowed": decision.allowed,
            "credits": user.credits,
            "lifetime_access": bool(user.lifetime_access),
            "free_turns_used": state["user_turns"],
            "free_turns_remaining": max(0, self.free_quota - state["user_turns"]),
            "subscription": serialize_subscription(subscription),
        }


def serialize_subscription(subscription) -> Optional[dict]:
    if subscription is None:
        return None
    return {
        "tier": subscription.tier,
        "status": subscription.status,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None,
        "trial_end": subscription.trial_end.isoformat() if subscription.trial_end else None,
    }
