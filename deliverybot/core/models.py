"""Core data models for deliverybot."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Mapping

from deliverybot.constants import COLOR_ERROR, COLOR_SUCCESS, COLOR_WARNING
from deliverybot.core.errors import InvalidRequest


class PlanTier(str, Enum):
    """Purchasable plan tiers. The set is closed."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    LIFETIME = "lifetime"

    @property
    def display_name(self) -> str:
        return self.value[:1].upper() + self.value[1:]

    @classmethod
    def parse(cls, raw: object) -> "PlanTier | None":
        """Case-insensitive lookup; None for missing or unknown values."""
        if not isinstance(raw, str):
            return None
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return None


def _clean(raw: object) -> str | None:
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


@dataclass(frozen=True)
class DeliveryRequest:
    """One purchase to deliver. Constructed from the inbound event, consumed once."""

    buyer_id: str
    buyer_name: str
    license_key: str
    plan: PlanTier
    download_url: str | None = None
    email: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, object]) -> "DeliveryRequest":
        """Validate an inbound webhook body.

        Raises:
            InvalidRequest: buyer id, license key or plan tier missing/invalid.
        """
        buyer_id = _clean(payload.get("discord_id"))
        license_key = _clean(payload.get("license_key"))
        if not buyer_id or not license_key:
            raise InvalidRequest("Missing required fields")

        raw_plan = payload.get("plan_type")
        plan = PlanTier.parse(raw_plan)
        if plan is None:
            allowed = ", ".join(t.value for t in PlanTier)
            raise InvalidRequest(f"Invalid plan_type {raw_plan!r}; expected one of: {allowed}")

        return cls(
            buyer_id=buyer_id,
            buyer_name=_clean(payload.get("discord_username")) or buyer_id,
            license_key=license_key,
            plan=plan,
            download_url=_clean(payload.get("download_url")),
            email=_clean(payload.get("email")),
        )


@dataclass(frozen=True)
class MembershipOutcome:
    """Result of the community phase of one delivery. Never stored."""

    is_member: bool = False
    grant_applied: bool = False
    invite_url: str | None = None
    community_checked: bool = False

    def __post_init__(self) -> None:
        if self.invite_url is not None and self.is_member:
            raise ValueError("invite_url is only valid for non-members")
        if self.grant_applied and not self.is_member:
            raise ValueError("grant_applied requires membership")


class DeliveryPath(str, Enum):
    MEMBER_GRANT = "member_grant"
    INVITE = "invite"
    CREDENTIALS_ONLY = "credentials_only"


@dataclass(frozen=True)
class DeliveryResult:
    """Summary returned to the delivery caller on success."""

    path: DeliveryPath
    in_server: bool
    role_assigned: bool
    invite_created: bool
    success: bool = True

    @classmethod
    def from_outcome(cls, outcome: MembershipOutcome) -> "DeliveryResult":
        if outcome.is_member:
            path = DeliveryPath.MEMBER_GRANT
        elif outcome.invite_url:
            path = DeliveryPath.INVITE
        else:
            path = DeliveryPath.CREDENTIALS_ONLY
        return cls(
            path=path,
            in_server=outcome.is_member,
            role_assigned=outcome.grant_applied,
            invite_created=outcome.invite_url is not None,
        )

    @property
    def message(self) -> str:
        if self.path is DeliveryPath.MEMBER_GRANT:
            return "Role assigned"
        if self.path is DeliveryPath.INVITE:
            return "Invite sent"
        return "Credentials sent"

    def to_dict(self) -> dict[str, object]:
        return {
            "success": self.success,
            "message": self.message,
            "path": self.path.value,
            "in_server": self.in_server,
            "role_assigned": self.role_assigned,
            "invite_created": self.invite_created,
        }


# ==================== Notifications ====================


class SectionKind(Enum):
    """Notification sections, declared in display order."""

    CREDENTIALS = "credentials"
    PLAN = "plan"
    CONTACT = "contact"
    EXPIRY = "expiry"
    INVITE = "invite"
    COMMUNITY_ACCESS = "community_access"
    DOWNLOAD = "download"
    INSTRUCTIONS = "instructions"

    @property
    def rank(self) -> int:
        return _SECTION_RANK[self]


_SECTION_RANK = {kind: index for index, kind in enumerate(SectionKind)}


class Severity(Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"

    @property
    def color(self) -> int:
        return {Severity.SUCCESS: COLOR_SUCCESS, Severity.WARNING: COLOR_WARNING, Severity.ERROR: COLOR_ERROR}[self]


@dataclass(frozen=True)
class NotificationSection:
    kind: SectionKind
    name: str
    value: str
    inline: bool = False


@dataclass(frozen=True)
class NotificationPayload:
    """A composed private message. Sections are kept in `SectionKind` order."""

    title: str
    description: str
    sections: tuple[NotificationSection, ...]
    severity: Severity
    footer: str
    timestamp: datetime

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.sections, key=lambda s: s.kind.rank))
        object.__setattr__(self, "sections", ordered)

    @property
    def kinds(self) -> tuple[SectionKind, ...]:
        return tuple(s.kind for s in self.sections)

    def section(self, kind: SectionKind) -> NotificationSection | None:
        for s in self.sections:
            if s.kind is kind:
                return s
        return None


# ==================== Expiry ====================


@dataclass(frozen=True)
class ExpiryRecord:
    """One license row from the external record service (read-only)."""

    email: str
    expires_at: datetime
    buyer_id: str | None = None
    plan: PlanTier | None = None
    license_key: str | None = None

    def days_until_expiry(self, now: datetime) -> int:
        """Ceiling of the remaining time in whole days (<= 0 once expired)."""
        return math.ceil((self.expires_at - now) / timedelta(days=1))


@dataclass(frozen=True)
class SweepFailure:
    email: str
    kind: str
    detail: str


@dataclass
class SweepReport:
    """What one expiry sweep did."""

    started_at: datetime
    finished_at: datetime | None = None
    enabled: bool = True
    skipped_overlap: bool = False
    examined: int = 0
    reminders_sent: int = 0
    revocations: int = 0
    roles_revoked: int = 0
    failures: list[SweepFailure] = field(default_factory=list)

    def summary(self) -> str:
        if not self.enabled:
            return "sweep disabled (license store not configured)"
        if self.skipped_overlap:
            return "sweep skipped (previous sweep still running)"
        return (
            f"examined={self.examined} reminders={self.reminders_sent} "
            f"revocations={self.revocations} roles_revoked={self.roles_revoked} failures={len(self.failures)}"
        )
