"""Periodic subscription expiry sweep.

Runs on its own schedule, independent of the gateway webhooks. It shares only the user
row with the activator, and it uses the same guarded update: a user whose window was
extended after the sweep read it is left alone.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import User, utcnow
from ..database.repository import UserRepository
from .notifications import ChannelMembership, ExpiryNotifier

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counts from one sweep run."""
    deactivated: int = 0
    kicked_out: int = 0
    skipped: int = 0
    failed_removals: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "deactivated": self.deactivated,
            "kicked_out": self.kicked_out,
            "skipped": self.skipped,
            "failed_removals": list(self.failed_removals),
        }


class SubscriptionSweeper:
    """Deactivates lapsed subscriptions and warns users about upcoming expiry."""

    def __init__(
        self,
        session: AsyncSession,
        channel: Optional[ChannelMembership] = None,
        notifier: Optional[ExpiryNotifier] = None,
    ):
        self.session = session
        self.channel = channel
        self.notifier = notifier
        self.users = UserRepository(session)

    async def warn_expiring(self, within_days: int = 3, now: Optional[datetime] = None) -> int:
        """Notify active users whose subscription ends within ``within_days``.

        Returns:
            Number of users notified.
        """
        if self.notifier is None:
            return 0
        now = now or utcnow()
        users = await self.users.list_expiring(now, now + timedelta(days=within_days))
        notified = 0
        for user in users:
            days_left = max((user.subscription_end - now).days, 0)
            try:
                await self.notifier.notify_subscription_expiring(user, days_left)
                notified += 1
            except Exception:
                logger.exception(f"Expiry warning for user {user.id} failed")
        logger.info(f"Sent {notified} expiry warning(s)")
        return notified

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Deactivate every user whose subscription has ended.

        The guarded deactivation comes first, so a user who renewed after the read is
        never removed. After a successful removal a second guarded update marks the
        user kicked out. If that loses, a payment landed during the removal without
        seeing the kicked-out flag, and the sweep re-admits the user itself. A failed
        removal leaves the flag unset, so the next run retries it.
        """
        now = now or utcnow()
        report = SweepReport()
        lapsed = await self.users.list_lapsed(now)

        for user in lapsed:
            user_id = user.id
            observed_end = user.subscription_end

            deactivated = await self.users.deactivate(user_id, expected_end=observed_end)
            # Commit even when nothing changed; a rollback would expire the loaded users
            await self.session.commit()
            if not deactivated:
                logger.info(f"User {user_id} renewed during sweep, skipping")
                report.skipped += 1
                continue

            removed = True
            if self.channel is not None:
                try:
                    await self.channel.remove(user)
                except Exception:
                    logger.exception(f"Channel removal of user {user_id} failed")
                    removed = False
                    report.failed_removals.append(user_id)

            if removed:
                marked = await self.users.mark_kicked_out(user_id, expected_end=observed_end)
                await self.session.commit()
                if not marked:
                    logger.warning(f"User {user_id} renewed while being removed, re-admitting")
                    report.skipped += 1
                    await self._readmit(user)
                    continue
                report.kicked_out += 1

            report.deactivated += 1

            if self.notifier is not None:
                try:
                    await self.notifier.notify_subscription_expired(user)
                except Exception:
                    logger.exception(f"Expiry notice for user {user_id} failed")

        logger.info(
            f"Sweep finished: {report.deactivated} deactivated, "
            f"{report.kicked_out} removed, {report.skipped} skipped"
        )
        return report

    async def _readmit(self, user: User) -> None:
        if self.channel is None:
            return
        try:
            await self.channel.readmit(user)
        except Exception:
            logger.exception(f"Channel re-admission of user {user.id} failed")
