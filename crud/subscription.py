"""
SubscriptionRepository - per-user mirror of the Stripe subscription
"""

from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Subscription, SUBSCRIPTION_STATUSES

SNAPSHOT_FIELDS = (
    "stripe_subscription_id",
    "tier",
    "status",
    "cancel_at_period_end",
    "current_period_end",
    "trial_end",
)


class SubscriptionRepository:
    """Reads and last-writer-wins updates of subscription snapshots."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_for_user(self, user_id: int) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.user_id == user_id)
        )
        return result.scalar_one_or_none()

    async def get_by_stripe_id(self, stripe_subscription_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        )
        return result.scalar_one_or_none()

    async def apply_snapshot(self, user_id: int, snapshot: dict, processor_updated_at: int) -> bool:
        """
        Store processor state for a user unless a fresher state is already stored.

        Args:
            user_id: Owner of the subscription
            snapshot: Subset of SNAPSHOT_FIELDS to write
            processor_updated_at: Epoch seconds of the processor state being applied

        Returns:
            True if the snapshot was written, False if it was stale and skipped
        """
        status = snapshot.get("status")
        if status is not None and status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown subscription status: {status}")

        subscription = await self.get_for_user(user_id)
        if subscription is None:
            subscription = Subscription(user_id=user_id, processor_updated_at=0)
            self.db.add(subscription)
        elif processor_updated_at < subscription.processor_updated_at:
            return False

        for key in SNAPSHOT_FIELDS:
            if key in snapshot:
                setattr(subscription, key, snapshot[key])
        subscription.processor_updated_at = processor_updated_at
        await self.db.flush()
        return True
