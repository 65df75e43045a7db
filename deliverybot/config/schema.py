import re
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

from deliverybot.constants import DEFAULT_REMINDER_DAYS, DEFAULT_SWEEP_AT

_AT_PATTERN = re.compile(r"^(\d{2}):(\d{2})$")


class SweepScheduleConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    at: str = DEFAULT_SWEEP_AT  # "HH:MM", wall clock
    timezone: Optional[str] = None  # IANA name; None means system local time
    reminder_days: int = Field(default=DEFAULT_REMINDER_DAYS, ge=1, le=30)

    @field_validator("at")
    @classmethod
    def validate_at_format(cls, v: str) -> str:
        """Validate HH:MM time format."""
        match = _AT_PATTERN.match(v)
        if not match:
            raise ValueError(f"Invalid time format: {v}. Expected format: HH:MM (e.g., '09:00', '14:30')")
        hour, minute = int(match.group(1)), int(match.group(2))
        if not (0 <= hour <= 23):
            raise ValueError(f"Invalid hour in {v}: must be 00-23")
        if not (0 <= minute <= 59):
            raise ValueError(f"Invalid minute in {v}: must be 00-59")
        return v

    @field_validator("timezone", mode="before")
    @classmethod
    def validate_timezone(cls, v: object) -> Optional[str]:
        if v is None or (isinstance(v, str) and not v.strip()):
            return None
        name = str(v).strip()
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {name}") from e
        return name

    @property
    def hour(self) -> int:
        return int(self.at.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.at.split(":")[1])

    @property
    def tzinfo(self) -> Optional[ZoneInfo]:
        return ZoneInfo(self.timezone) if self.timezone else None
