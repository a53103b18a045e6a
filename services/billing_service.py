"""
Billing Service - Stripe checkout, subscription actions and webhook entitlement updates
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import (
    settings,
    PURCHASE_CREDITS,
    PURCHASE_LIFETIME,
    PURCHASE_SUBSCRIPTION,
)
from crud.subscription import SubscriptionRepository
from crud.user import UserRepository
from crud.webhook_event import WebhookEventRepository
from database_models import (
    User,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_TRIALING,
    SUBSCRIPTION_PAST_DUE,
    SUBSCRIPTION_CANCELED,
    SUBSCRIPTION_INACTIVE,
)

logger = logging.getLogger(__name__)

# Initialize Stripe client
if settings.stripe_secret_key:
    stripe.api_key = settings.stripe_secret_key
else:
    logger.warning("STRIPE_SECRET_KEY is not set. Stripe functionality will be unavailable.")

# Stripe statuses folded into the closed snapshot enum
STRIPE_STATUS_MAP = {
    "active": SUBSCRIPTION_ACTIVE,
    "trialing": SUBSCRIPTION_TRIALING,
    "past_due": SUBSCRIPTION_PAST_DUE,
    "unpaid": SUBSCRIPTION_PAST_DUE,
    "canceled": SUBSCRIPTION_CANCELED,
    "incomplete": SUBSCRIPTION_INACTIVE,
    "incomplete_expired": SUBSCRIPTION_INACTIVE,
    "paused": SUBSCRIPTION_INACTIVE,
}

PURCHASE_KINDS = (PURCHASE_CREDITS, PURCHASE_SUBSCRIPTION, PURCHASE_LIFETIME)


def _field(obj: Any, key: str, default=None):
    """Item access that works for plain dicts and StripeObjects."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError):
        return default
    return default if value is None else value


def _timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def normalize_status(stripe_status: Optional[str]) -> str:
    return STRIPE_STATUS_MAP.get(stripe_status or "", SUBSCRIPTION_INACTIVE)


def snapshot_from_subscription(subscription: Any) -> dict:
    """Map a Stripe subscription object onto snapshot columns."""
    items = _field(_field(subscription, "items"), "data", [])
    first_item = items[0] if items else None
    price = _field(first_item, "price")
    # Newer API versions report the period on the item rather than the subscription
    period_end = _field(subscription, "current_period_end") or _field(first_item, "current_period_end")
    return {
        "stripe_subscription_id": _field(subscription, "id"),
        "tier": _field(price, "lookup_key") or _field(price, "id"),
        "status": normalize_status(_field(subscription, "status")),
        "cancel_at_period_end": bool(_field(subscription, "cancel_at_period_end", False)),
        "current_period_end": _timestamp(period_end),
        "trial_end": _timestamp(_field(subscription, "trial_end")),
    }


class BillingService:
    """
    Service class for handling billing-related business logic.
    Everything here ends in one of three user-facing effects: credits added,
    lifetime access granted, or the subscription snapshot refreshed.
    """

    def __init__(self, db: AsyncSession):
        """
        Initialize the billing service.

        Args:
            db: AsyncSession instance for database operations
        """
        self.db = db
        self.users = UserRepository(db)
        self.subscriptions = SubscriptionRepository(db)
        self.events = WebhookEventRepository(db)

    def _price_for(self, purchase: str) -> Optional[str]:
        return {
            PURCHASE_CREDITS: settings.stripe_price_credits,
            PURCHASE_SUBSCRIPTION: settings.stripe_price_subscription,
            PURCHASE_LIFETIME: settings.stripe_price_lifetime,
        }.get(purchase)

    async def ensure_customer(self, user: User) -> str:
        """Return the user's Stripe customer id, creating the customer on first use."""
        if user.stripe_customer_id:
            return user.stripe_customer_id
        customer = stripe.Customer.create(
            email=user.email,
            metadata={"user_id": str(user.id)},
        )
        await self.users.update_user(user, {"stripe_customer_id": customer.id})
        await self.db.commit()
        return customer.id

    async def create_checkout_session(self, user: User, purchase: str):
        """
        Create a Stripe Checkout session for a credit pack, lifetime access or a subscription.

        Args:
            user: Authenticated user making the purchase
            purchase: One of "credits", "subscription", "lifetime"

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        if not settings.stripe_secret_key:
            logger.error("STRIPE_SECRET_KEY is not set. Cannot create checkout session.")
            return {"error": "Billing is not configured", "is_error": True}

        if purchase not in PURCHASE_KINDS:
            return {"error": f"Unknown purchase type: {purchase}", "is_error": True}

        price_id = self._price_for(purchase)
        if not price_id:
            logger.error(f"No Stripe price configured for purchase type '{purchase}'")
            return {"error": "Billing is not configured", "is_error": True}

        try:
            customer_id = await self.ensure_customer(user)
            frontend_url = settings.frontend_url or "http://localhost:5173"
            metadata = {"user_id": str(user.id), "purchase": purchase}
            if purchase == PURCHASE_CREDITS:
                metadata["credits"] = str(settings.credits_per_pack)

            params = {
                "customer": customer_id,
                "client_reference_id": str(user.id),
                "line_items": [{"price": price_id, "quantity": 1}],
                "mode": "subscription" if purchase == PURCHASE_SUBSCRIPTION else "payment",
                "success_url": f"{frontend_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                "cancel_url": f"{frontend_url}/billing/cancel",
                "metadata": metadata,
            }
            if purchase == PURCHASE_SUBSCRIPTION:
                params["subscription_data"] = {"metadata": {"user_id": str(user.id)}}

            checkout_session = stripe.checkout.Session.create(**params)
            return {"data": checkout_session.url, "is_error": False}
        except stripe.StripeError as e:
            logger.error(f"Failed to create checkout session: {e}", exc_info=True)
            return {"error": "Could not start checkout", "is_error": True}

    async def create_billing_portal_session(self, user: User):
        """
        Create a Stripe Billing Portal session.

        Returns:
            Normalized response: {"data": url, "is_error": False} or {"error": str(e), "is_error": True}
        """
        if not settings.stripe_secret_key:
            logger.error("STRIPE_SECRET_KEY is not set. Cannot create billing portal session.")
            return {"error": "Billing is not configured", "is_error": True}

        if not user.stripe_customer_id:
            return {"error": "No billing account for this user", "is_error": True}

        try:
            frontend_url = settings.frontend_url or "http://localhost:5173"
            portal_session = stripe.billing_portal.Session.create(
                customer=user.stripe_customer_id,
                return_url=f"{frontend_url}/settings"
            )
            return {"data": portal_session.url, "is_error": False}
        except stripe.StripeError as e:
            logger.error(f"Failed to create billing portal session: {e}", exc_info=True)
            return {"error": "Could not open billing portal", "is_error": True}

    async def set_cancel_at_period_end(self, user: User, cancel: bool):
        """
        Cancel (at period end) or reactivate the user's subscription, then mirror
        the processor's answer into the snapshot right away instead of waiting
        for the webhook.
        """
        subscription = await self.subscriptions.get_for_user(user.id)
        if subscription is None or not subscription.stripe_subscription_id:
            return {"error": "No subscription for this user", "is_error": True}

        try:
            updated = stripe.Subscription.modify(
                subscription.stripe_subscription_id,
                cancel_at_period_end=cancel,
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to update subscription for user {user.id}: {e}", exc_info=True)
            return {"error": "Could not update subscription", "is_error": True}

        snapshot = snapshot_from_subscription(updated)
        await self.subscriptions.apply_snapshot(user.id, snapshot, int(time.time()))
        await self.db.commit()
        logger.info(f"Subscription for user {user.id} cancel_at_period_end={cancel}")
        return {"data": snapshot["status"], "is_error": False}

    async def process_webhook(self, event: dict):
        """
        Apply a verified Stripe event exactly once.

        The event id is recorded in the same transaction as its effects, so a
        redelivered event (or a concurrent duplicate) changes nothing.

        Args:
            event: Verified event payload (plain dict)

        Returns:
            Normalized response: {"data": {"duplicate": bool}, "is_error": False} or
            {"error": str, "is_error": True}
        """
        event_id = _field(event, "id")
        event_type = _field(event, "type", "")
        if not event_id:
            return {"error": "Event has no id", "is_error": True}

        if await self.events.is_processed(event_id):
            logger.info(f"Skipping already processed Stripe event {event_id} ({event_type})")
            return {"data": {"duplicate": True}, "is_error": False}

        try:
            await self.events.mark_processed(event_id, event_type)
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"Stripe event {event_id} processed concurrently, skipping")
            return {"data": {"duplicate": True}, "is_error": False}

        try:
            obj = _field(_field(event, "data"), "object", {})
            created = int(_field(event, "created", 0) or time.time())
            handler = {
                "checkout.session.completed": self._on_checkout_completed,
                "customer.subscription.created": self._on_subscription_changed,
                "customer.subscription.updated": self._on_subscription_changed,
                "customer.subscription.deleted": self._on_subscription_changed,
                "invoice.payment_succeeded": self._on_invoice_paid,
                "invoice.payment_failed": self._on_invoice_failed,
            }.get(event_type)
            if handler is None:
                logger.info(f"Ignoring Stripe event type {event_type}")
            else:
                await handler(obj, created)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Error processing webhook {event_id}: {e}", exc_info=True)
            return {"error": "Webhook processing failed", "is_error": True}

        logger.info(f"Processed Stripe webhook event {event_id}: {event_type}")
        return {"data": {"duplicate": False}, "is_error": False}

    async def _resolve_user(self, obj: Any) -> Optional[User]:
        metadata = _field(obj, "metadata", {})
        user_id = _field(metadata, "user_id") or _field(obj, "client_reference_id")
        if user_id:
            try:
                user = await self.users.get_user_by_id(int(user_id))
            except (TypeError, ValueError):
                user = None
            if user is not None:
                return user
        customer_id = _field(obj, "customer")
        if customer_id:
            return await self.users.get_user_by_stripe_customer_id(customer_id)
        return None

    async def _on_checkout_completed(self, session: Any, created: int):
        user = await self._resolve_user(session)
        if user is None:
            logger.warning(f"Checkout session {_field(session, 'id')} has no matching user")
            return

        customer_id = _field(session, "customer")
        if customer_id and not user.stripe_customer_id:
            await self.users.update_user(user, {"stripe_customer_id": customer_id})

        metadata = _field(session, "metadata", {})
        purchase = _field(metadata, "purchase")
        if purchase == PURCHASE_CREDITS:
            amount = int(_field(metadata, "credits", settings.credits_per_pack))
            await self.users.add_credits(user.id, amount)
            logger.info(f"Added {amount} credits to user {user.id}")
        elif purchase == PURCHASE_LIFETIME:
            await self.users.grant_lifetime_access(user.id)
            logger.info(f"Granted lifetime access to user {user.id}")
        elif purchase == PURCHASE_SUBSCRIPTION:
            # Status arrives with the customer.subscription.* events
            logger.info(f"Subscription checkout completed for user {user.id}")
        else:
            logger.warning(f"Checkout session without a known purchase type: {purchase}")

    async def _on_subscription_changed(self, subscription: Any, created: int):
        user = await self._resolve_user(subscription)
        if user is None:
            logger.warning(f"Subscription {_field(subscription, 'id')} has no matching user")
            return
        applied = await self.subscriptions.apply_snapshot(
            user.id, snapshot_from_subscription(subscription), created
        )
        if not applied:
            logger.info(f"Stale subscription update for user {user.id} ignored")

    async def _set_snapshot_status(self, invoice: Any, created: int, status: str):
        subscription_id = _field(invoice, "subscription")
        if not subscription_id:
            return
        snapshot = await self.subscriptions.get_by_stripe_id(subscription_id)
        if snapshot is None:
            logger.info(f"Invoice for unknown subscription {subscription_id}")
            return
        await self.subscriptions.apply_snapshot(snapshot.user_id, {"status": status}, created)

    async def _on_invoice_paid(self, invoice: Any, created: int):
        await self._set_snapshot_status(invoice, created, SUBSCRIPTION_ACTIVE)

    async def _on_invoice_failed(self, invoice: Any, created: int):
        await self._set_snapshot_status(invoice, created, SUBSCRIPTION_PAST_DUE)
