import logging
import uuid
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.database import utcnow
from studio_booking.core.exceptions import ConflictError, NotFoundError
from studio_booking.models import BookingDraft
from studio_booking.models.enums import DraftStep
from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.services.time_normalizer import TimeNormalizer

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("service", "date", "time", "name")
MAX_MERGE_ATTEMPTS = 5


class DraftService:
    """
    Holds one in-progress booking per customer.

    Writes go through a version-checked UPDATE: a writer that read an older
    version matches no row, re-reads and re-applies its changes. No
    application lock is involved.
    """

    def __init__(
        self,
        db: AsyncSession,
        normalizer: TimeNormalizer,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.normalizer = normalizer
        self.clock = clock

    async def get(self, customer_id: str) -> BookingDraft | None:
        result = await self.db.execute(
            select(BookingDraft)
            .where(BookingDraft.customer_id == customer_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, draft_id: uuid.UUID) -> BookingDraft | None:
        result = await self.db.execute(
            select(BookingDraft)
            .where(BookingDraft.id == draft_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(
        self,
        customer_id: str,
        customer_phone: str | None = None,
        draft_id: uuid.UUID | None = None,
    ) -> BookingDraft:
        """Return the customer's draft, creating an empty one on first use."""
        draft = await self.get(customer_id)
        if draft:
            return draft

        now = self.clock()
        draft = BookingDraft(
            id=draft_id or uuid.uuid4(),
            customer_id=customer_id,
            customer_phone=customer_phone,
            step=DraftStep.COLLECT_SERVICE.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.db.add(draft)
        try:
            await self.db.commit()
        except IntegrityError:
            # Another turn created it first
            await self.db.rollback()
            draft = await self.get(customer_id)
            if draft is None:
                raise
            return draft

        logger.info("Draft created", extra={"customer_id": customer_id, "draft_id": str(draft.id)})
        return draft

    async def merge(
        self,
        customer_id: str,
        record: ExtractionRecord,
        customer_phone: str | None = None,
    ) -> BookingDraft:
        """
        Merge extracted fields into the customer's draft.

        Only fields present in `record` are written; everything else on the
        draft is left as it was. When date and time are both known the
        normalized UTC instant is recomputed.

        Args:
            customer_id: Owner of the draft
            record: Validated extraction for this turn
            customer_phone: Channel-supplied phone, stored if the draft has none

        Returns:
            The draft after the merge (unchanged when there was nothing to write)
        """
        draft = await self.get_or_create(customer_id, customer_phone=customer_phone)
        incoming = record.present_fields()

        def changes_for(current: BookingDraft) -> dict[str, Any]:
            changes = {
                field: value
                for field, value in incoming.items()
                if getattr(current, field) != value
            }
            if customer_phone and not current.customer_phone:
                changes["customer_phone"] = customer_phone

            if "date" in changes or "time" in changes:
                changes["date_time_utc"] = self._normalized_instant(
                    changes.get("date", current.date),
                    changes.get("time", current.time),
                    customer_id,
                )
            return changes

        return await self._apply(draft, changes_for)

    async def update_fields(self, draft: BookingDraft, **fields: Any) -> BookingDraft:
        """Version-checked write of explicit field values (step changes, phone corrections)."""

        def changes_for(current: BookingDraft) -> dict[str, Any]:
            return {
                field: value
                for field, value in fields.items()
                if getattr(current, field) != value
            }

        return await self._apply(draft, changes_for)

    async def missing_fields(self, draft: BookingDraft) -> list[str]:
        """
        Ordered list of fields still needed before the draft can be paid for.

        When the booking is for the customer themselves, the recipient name
        defaults to the customer's name and is written back to the draft.
        """
        missing = [field for field in REQUIRED_FIELDS if not getattr(draft, field)]

        if draft.is_for_someone_else:
            if not draft.recipient_name:
                missing.append("recipient_name")
            if not draft.recipient_phone:
                missing.append("recipient_phone")
        elif draft.name and not draft.recipient_name:
            await self.update_fields(draft, recipient_name=draft.name)

        return missing

    async def delete(self, customer_id: str) -> bool:
        result = await self.db.execute(
            delete(BookingDraft).where(BookingDraft.customer_id == customer_id)
        )
        await self.db.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Draft deleted", extra={"customer_id": customer_id})
        return deleted

    async def restore(
        self,
        customer_id: str,
        draft_id: uuid.UUID,
        snapshot: dict[str, Any],
    ) -> BookingDraft:
        """
        Recreate or backfill a draft from a payment's snapshot.

        Only fields missing on the live draft are taken from the snapshot.
        """
        draft = await self.get_or_create(
            customer_id,
            customer_phone=snapshot.get("customer_phone"),
            draft_id=draft_id,
        )
        restorable = {
            field: snapshot.get(field)
            for field in BookingDraft.SNAPSHOT_FIELDS
            if snapshot.get(field) is not None
        }

        def changes_for(current: BookingDraft) -> dict[str, Any]:
            changes = {
                field: value
                for field, value in restorable.items()
                if not getattr(current, field) and getattr(current, field) != value
            }
            if "date" in changes or "time" in changes:
                changes["date_time_utc"] = self._normalized_instant(
                    changes.get("date", current.date),
                    changes.get("time", current.time),
                    customer_id,
                )
            return changes

        return await self._apply(draft, changes_for)

    # ============== Helpers ==============

    def _normalized_instant(self, date_text: str | None, time_text: str | None, customer_id: str) -> datetime | None:
        if not date_text or not time_text:
            return None
        normalized = self.normalizer.normalize(date_text, time_text)
        if normalized is None:
            logger.warning(
                "Draft date/time could not be normalized",
                extra={"customer_id": customer_id, "reason": f"{date_text} {time_text}"},
            )
            return None
        return normalized.utc

    async def _apply(
        self,
        draft: BookingDraft,
        changes_for: Callable[[BookingDraft], dict[str, Any]],
    ) -> BookingDraft:
        customer_id = draft.customer_id

        for attempt in range(MAX_MERGE_ATTEMPTS):
            changes = changes_for(draft)
            if not changes:
                return draft

            expected_version = draft.version
            result = await self.db.execute(
                update(BookingDraft)
                .where(
                    BookingDraft.id == draft.id,
                    BookingDraft.version == expected_version,
                )
                .values(**changes, version=expected_version + 1, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                await self.db.commit()
                refreshed = await self.get_by_id(draft.id)
                if refreshed is None:
                    raise NotFoundError("Your booking request has expired. Let's start a new one.")
                return refreshed

            await self.db.rollback()
            logger.info(
                "Draft version moved, retrying merge",
                extra={"customer_id": customer_id, "reason": f"attempt={attempt + 1}"},
            )
            draft = await self.get(customer_id)
            if draft is None:
                raise NotFoundError("Your booking request has expired. Let's start a new one.")

        raise ConflictError("Your booking details were being updated at the same time. Please try again.")

