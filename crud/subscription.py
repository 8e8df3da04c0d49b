"""
SubscriptionRepository for the subscription ledger
"""

from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Subscription


class SubscriptionRepository:
    """
    Ledger access. Exactly one record per user carries is_current=True;
    retire_current() must run before a replacement is created.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_current_for_user(self, user_id: int) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id, Subscription.is_current.is_(True))
            .order_by(Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_by_subscription_code(self, subscription_code: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.subscription_code == subscription_code)
            .order_by(Subscription.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_user(self, user_id: int) -> List[Subscription]:
        """Full ledger history for a user, newest first."""
        result = await self.db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.id.desc())
        )
        return list(result.scalars().all())

    async def list_current_with_status(self, status: str) -> List[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == status,
                Subscription.is_current.is_(True),
            )
        )
        return list(result.scalars().all())

    async def retire_current(self, user_id: int) -> None:
        await self.db.execute(
            update(Subscription)
            .where(Subscription.user_id == user_id, Subscription.is_current.is_(True))
            .values(is_current=False)
        )

    async def create(self, values: dict) -> Subscription:
        record = Subscription(**values)
        self.db.add(record)
        await self.db.flush()
        return record
