import logging
import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator
from pydantic import ValidationError as PydanticValidationError

from studio_booking.models.enums import SubIntent

logger = logging.getLogger(__name__)

PHONE_STRIP_PATTERN = re.compile(r"[\s\-+().]")

# Draft fields an extraction may set, in merge order
BOOKING_FIELDS = (
    "service",
    "date",
    "time",
    "name",
    "recipient_name",
    "recipient_phone",
    "is_for_someone_else",
)


class ExtractionRecord(BaseModel):
    """
    One turn's worth of extracted booking fields.

    The payload comes from a language model, so everything is optional,
    unknown keys are dropped and individual bad values are discarded
    (see `from_untrusted`).
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    service: str | None = Field(None, max_length=200)
    date: str | None = Field(None, max_length=60)
    time: str | None = Field(None, max_length=60)
    name: str | None = Field(None, max_length=120)
    recipient_name: str | None = Field(None, max_length=120, alias="recipientName")
    recipient_phone: str | None = Field(None, alias="recipientPhone")
    is_for_someone_else: bool | None = Field(None, alias="isForSomeoneElse")
    sub_intent: SubIntent = Field(SubIntent.UNKNOWN, alias="subIntent")

    _invalid_fields: list[str] = PrivateAttr(default_factory=list)

    @field_validator("service", "date", "time", "name", "recipient_name", mode="before")
    @classmethod
    def clean_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ValueError("expected text")
        text = " ".join(str(value).split())
        if text.lower() in ("", "null", "none", "n/a"):
            return None
        return text

    @field_validator("recipient_phone", mode="before")
    @classmethod
    def clean_phone(cls, value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            raise ValueError("expected a phone number")
        digits = PHONE_STRIP_PATTERN.sub("", str(value))
        if not digits or digits.lower() in ("null", "none"):
            return None
        if not digits.isdigit() or not 9 <= len(digits) <= 15:
            raise ValueError("phone number must have 9 to 15 digits")
        return digits

    @field_validator("sub_intent", mode="before")
    @classmethod
    def coerce_sub_intent(cls, value: Any) -> SubIntent:
        if isinstance(value, SubIntent):
            return value
        if isinstance(value, str):
            try:
                return SubIntent(value.strip().lower())
            except ValueError:
                return SubIntent.UNKNOWN
        return SubIntent.UNKNOWN

    @property
    def invalid_fields(self) -> list[str]:
        return list(self._invalid_fields)

    def present_fields(self) -> dict[str, Any]:
        """Booking fields carried by this record (non-null only)."""
        return {
            field: getattr(self, field)
            for field in BOOKING_FIELDS
            if getattr(self, field) is not None
        }

    def has_booking_fields(self) -> bool:
        return bool(self.present_fields())

    @classmethod
    def from_untrusted(cls, raw: Any) -> "ExtractionRecord":
        """
        Validate a raw extraction payload, dropping fields that fail validation.

        Args:
            raw: Whatever the extraction collaborator produced

        Returns:
            A record holding only the valid fields; the names of the dropped
            ones are available on `invalid_fields`.
        """
        if not isinstance(raw, dict):
            logger.warning("Discarding non-object extraction payload", extra={"reason": type(raw).__name__})
            return cls()

        aliases = {info.alias: name for name, info in cls.model_fields.items() if info.alias}
        counterparts = {**aliases, **{name: alias for alias, name in aliases.items()}}
        data = dict(raw)
        invalid: list[str] = []

        def input_key(loc_key: Any) -> Any:
            if loc_key in data:
                return loc_key
            other = counterparts.get(loc_key)
            return other if other in data else None

        while True:
            try:
                record = cls.model_validate(data)
                break
            except PydanticValidationError as exc:
                bad_keys = {input_key(err["loc"][0]) for err in exc.errors() if err["loc"]}
                bad_keys.discard(None)
                if not bad_keys:
                    logger.warning("Extraction payload rejected", extra={"reason": str(exc)})
                    record = cls()
                    break
                for key in bad_keys:
                    data.pop(key, None)
                    invalid.append(aliases.get(key, key))

        if invalid:
            logger.info("Dropped invalid extraction fields", extra={"reason": ",".join(sorted(invalid))})
        record._invalid_fields = sorted(set(invalid))
        return record
