"""
View De-duplication - counts at most one view per content, client and day.
"""

import hashlib
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from fable_ledger.db.atomic import run_atomic
from fable_ledger.db.models import ViewCounter, ViewFingerprint, utc_now
from fable_ledger.models.domain import ViewResult
from fable_ledger.observability.logging import get_logger
from fable_ledger.observability.metrics import metrics

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


def view_fingerprint(content_id: str, client_identifier: str, day: date) -> str:
    """SHA-256 hex digest identifying one client's view of one content on one UTC day."""
    material = "\x1f".join((content_id, client_identifier, day.isoformat()))
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class ViewDeduplicationGate:
    """
    Records views so repeated requests from one client count once per day.

    The fingerprint insert is the atomic check-and-set; the counter moves
    only when the insert created a row.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record_view(
        self, content_id: str, client_identifier: str, now: datetime | None = None
    ) -> ViewResult:
        """Record a view and report whether it was counted."""
        if not content_id:
            raise ValueError("content_id cannot be empty")
        client = client_identifier or UNKNOWN_CLIENT
        at = now or utc_now()
        fingerprint = view_fingerprint(content_id, client, at.date())

        async def _record() -> ViewResult:
            counted = await self._insert_fingerprint(fingerprint, content_id, at)
            if counted:
                total = await self._increment_counter(content_id, at)
            else:
                total = await self.total_views(content_id)
            return ViewResult(counted=counted, total_views=total)

        result = await run_atomic(self.session, "record_view", _record)

        metrics.record_view(result.counted)
        logger.debug(
            "view_recorded",
            content_id=content_id,
            counted=result.counted,
            total_views=result.total_views,
        )
        return result

    async def total_views(self, content_id: str) -> int:
        """Current view count for a content id (0 when never viewed)."""
        stmt = select(ViewCounter.views).where(ViewCounter.content_id == content_id)
        result = await self.session.execute(stmt)
        views = result.scalar_one_or_none()
        return int(views) if views is not None else 0

    async def _insert_fingerprint(self, fingerprint: str, content_id: str, at: datetime) -> bool:
        """Insert the fingerprint; False when it already existed."""
        stmt = (
            pg_insert(ViewFingerprint)
            .values(
                fingerprint=fingerprint,
                content_id=content_id,
                view_day=at.date(),
                created_at=at,
            )
            .on_conflict_do_nothing(index_elements=[ViewFingerprint.fingerprint])
            .returning(ViewFingerprint.fingerprint)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def _increment_counter(self, content_id: str, at: datetime) -> int:
        """Upsert the content's counter by one and return the new total."""
        stmt = (
            pg_insert(ViewCounter)
            .values(content_id=content_id, views=1, updated_at=at)
            .on_conflict_do_update(
                index_elements=[ViewCounter.content_id],
                set_={"views": ViewCounter.views + 1, "updated_at": at},
            )
            .returning(ViewCounter.views)
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one())
