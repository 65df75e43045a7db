"""Build buyer-facing notification payloads.

Pure functions: the same inputs (including `issued_at`) always produce the
same payload. Section order is fixed by `SectionKind`, whatever subset is
present.
"""

from __future__ import annotations

from datetime import datetime, timezone

from deliverybot.config import BrandingConfig
from deliverybot.core.models import (
    DeliveryRequest,
    ExpiryRecord,
    MembershipOutcome,
    NotificationPayload,
    NotificationSection,
    SectionKind,
    Severity,
)

EMAIL_PLACEHOLDER = "Not provided"
INVITE_EXPIRY_NOTICE = "⚠️ Link expires in 24 hours"
DOWNLOAD_EXPIRY_NOTICE = "⏰ Expires in 1 hour"

MEMBER_INSTRUCTIONS = (
    "1️⃣ Download EA above\n"
    "2️⃣ Place in MT5: `MQL5/Experts/`\n"
    "3️⃣ Restart MT5\n"
    "4️⃣ Drag EA to chart\n"
    "5️⃣ Enter license key"
)
NEW_MEMBER_INSTRUCTIONS = (
    "1️⃣ **Join Discord (link above)**\n"
    "2️⃣ Download EA\n"
    "3️⃣ Place in `MQL5/Experts/`\n"
    "4️⃣ Restart MT5\n"
    "5️⃣ Enter license key"
)


def _credentials(license_key: str) -> NotificationSection:
    return NotificationSection(SectionKind.CREDENTIALS, "🔑 License Key", f"```{license_key}```")


def _contact(email: str | None) -> NotificationSection:
    return NotificationSection(SectionKind.CONTACT, "📧 Email", email or EMAIL_PLACEHOLDER, inline=True)


def compose_delivery_notification(
    request: DeliveryRequest,
    outcome: MembershipOutcome,
    *,
    issued_at: datetime,
    branding: BrandingConfig,
) -> NotificationPayload:
    """Compose the purchase confirmation DM."""
    plan = request.plan
    sections = [
        _credentials(request.license_key),
        NotificationSection(SectionKind.PLAN, "📱 Plan", plan.display_name, inline=True),
        _contact(request.email),
    ]

    if outcome.invite_url:
        sections.append(
            NotificationSection(
                SectionKind.INVITE,
                "🔗 Join Our Private Server",
                f"**[Click here to join]({outcome.invite_url})**\n\n"
                f"{INVITE_EXPIRY_NOTICE}\n"
                "After joining, you'll get:\n"
                f"• Exclusive {plan.value} member access\n"
                "• Trading signals & support\n"
                "• Direct access to our team",
            )
        )

    if outcome.grant_applied:
        sections.append(
            NotificationSection(
                SectionKind.COMMUNITY_ACCESS,
                "✨ Community Access",
                f"You've been added to the {plan.value} members group!\nCheck the exclusive channels!",
            )
        )

    if request.download_url:
        sections.append(
            NotificationSection(
                SectionKind.DOWNLOAD,
                "⬇️ Download EA",
                f"[Click here to download]({request.download_url})\n{DOWNLOAD_EXPIRY_NOTICE}",
            )
        )

    sections.append(
        NotificationSection(
            SectionKind.INSTRUCTIONS,
            "📖 Next Steps",
            MEMBER_INSTRUCTIONS if outcome.is_member else NEW_MEMBER_INSTRUCTIONS,
        )
    )

    return NotificationPayload(
        title=f"🎉 Payment Successful - {branding.name}!",
        description=(
            "Your EA access is now active!"
            if outcome.is_member
            else "Your EA access is ready! Join our Discord to get started."
        ),
        sections=tuple(sections),
        severity=Severity.SUCCESS,
        footer=branding.footer,
        timestamp=issued_at,
    )


def _utc(moment: datetime) -> str:
    return f"{moment.astimezone(timezone.utc):%Y-%m-%d %H:%M}"


def _renew_text(branding: BrandingConfig) -> str:
    if branding.renew_url:
        return f"[Renew your license]({branding.renew_url}) to keep your access."
    return f"Renew your license on {branding.name} to keep your access."


def _record_sections(record: ExpiryRecord) -> list[NotificationSection]:
    sections = []
    if record.license_key:
        sections.append(_credentials(record.license_key))
    if record.plan:
        sections.append(NotificationSection(SectionKind.PLAN, "📱 Plan", record.plan.display_name, inline=True))
    sections.append(_contact(record.email))
    return sections


def compose_expiry_reminder(
    record: ExpiryRecord,
    *,
    days_left: int,
    issued_at: datetime,
    branding: BrandingConfig,
) -> NotificationPayload:
    """Compose the renewal reminder for a license expiring soon."""
    day_word = "day" if days_left == 1 else "days"
    sections = _record_sections(record)
    sections.append(
        NotificationSection(
            SectionKind.EXPIRY,
            "📅 Expires",
            f"{_utc(record.expires_at)} UTC (in {days_left} {day_word})",
        )
    )
    sections.append(NotificationSection(SectionKind.INSTRUCTIONS, "🔄 Renew", _renew_text(branding)))

    return NotificationPayload(
        title="⏰ License Expiring Soon",
        description=f"Your {branding.name} license expires in {days_left} {day_word}.",
        sections=tuple(sections),
        severity=Severity.WARNING,
        footer=branding.footer,
        timestamp=issued_at,
    )


def compose_expiry_notice(
    record: ExpiryRecord,
    *,
    roles_revoked: int,
    issued_at: datetime,
    branding: BrandingConfig,
) -> NotificationPayload:
    """Compose the notice sent once a license has expired and access was revoked."""
    access_line = (
        "Your community member access has been removed."
        if roles_revoked
        else "Your member access is no longer active."
    )
    sections = _record_sections(record)
    sections.append(
        NotificationSection(
            SectionKind.EXPIRY,
            "📅 Expired",
            f"{_utc(record.expires_at)} UTC\n{access_line}",
        )
    )
    sections.append(NotificationSection(SectionKind.INSTRUCTIONS, "🔄 Renew", _renew_text(branding)))

    return NotificationPayload(
        title="❌ License Expired",
        description=f"Your {branding.name} license has expired.",
        sections=tuple(sections),
        severity=Severity.ERROR,
        footer=branding.footer,
        timestamp=issued_at,
    )
