"""Unit tests for notification composition."""

from datetime import timedelta
from itertools import product

import pytest

from deliverybot.config import BrandingConfig
from deliverybot.core.composer import (
    DOWNLOAD_EXPIRY_NOTICE,
    EMAIL_PLACEHOLDER,
    INVITE_EXPIRY_NOTICE,
    MEMBER_INSTRUCTIONS,
    NEW_MEMBER_INSTRUCTIONS,
    compose_delivery_notification,
    compose_expiry_notice,
    compose_expiry_reminder,
)
from deliverybot.core.models import DeliveryRequest, MembershipOutcome, PlanTier, SectionKind, Severity
from tests.fakes import NOW, record

BRANDING = BrandingConfig()


def _request(*, download: bool, email: bool) -> DeliveryRequest:
    return DeliveryRequest(
        buyer_id="123",
        buyer_name="alice",
        license_key="ABCD-1234",
        plan=PlanTier.MONTHLY,
        download_url="https://cdn.example.com/ea.zip?sig=1" if download else None,
        email="alice@example.com" if email else None,
    )


def _outcome(*, grant: bool, invite: bool) -> MembershipOutcome:
    if invite:
        return MembershipOutcome(is_member=False, invite_url="https://discord.gg/abc", community_checked=True)
    return MembershipOutcome(is_member=grant, grant_applied=grant, community_checked=True)


@pytest.mark.unit
@pytest.mark.parametrize("grant,invite,download,email", list(product([False, True], repeat=4)))
def test_section_presence(grant, invite, download, email):
    if grant and invite:
        # a grant needs membership, an invite needs its absence
        with pytest.raises(ValueError):
            MembershipOutcome(is_member=True, grant_applied=True, invite_url="https://discord.gg/abc")
        return
    request = _request(download=download, email=email)
    outcome = _outcome(grant=grant, invite=invite)

    payload = compose_delivery_notification(request, outcome, issued_at=NOW, branding=BRANDING)

    expected = [SectionKind.CREDENTIALS, SectionKind.PLAN, SectionKind.CONTACT]
    if invite:
        expected.append(SectionKind.INVITE)
    if grant:
        expected.append(SectionKind.COMMUNITY_ACCESS)
    if download:
        expected.append(SectionKind.DOWNLOAD)
    expected.append(SectionKind.INSTRUCTIONS)
    assert list(payload.kinds) == expected

    contact = payload.section(SectionKind.CONTACT)
    assert contact is not None
    assert contact.value == ("alice@example.com" if email else EMAIL_PLACEHOLDER)


@pytest.mark.unit
def test_composition_is_deterministic():
    request = _request(download=True, email=True)
    outcome = _outcome(grant=False, invite=True)

    first = compose_delivery_notification(request, outcome, issued_at=NOW, branding=BRANDING)
    second = compose_delivery_notification(request, outcome, issued_at=NOW, branding=BRANDING)

    assert first == second
    assert [(s.kind, s.name, s.value, s.inline) for s in first.sections] == [
        (s.kind, s.name, s.value, s.inline) for s in second.sections
    ]


@pytest.mark.unit
def test_delivery_notification_texts():
    request = _request(download=True, email=False)

    member = compose_delivery_notification(request, _outcome(grant=True, invite=False), issued_at=NOW, branding=BRANDING)
    newcomer = compose_delivery_notification(request, _outcome(grant=False, invite=True), issued_at=NOW, branding=BRANDING)

    assert member.severity is Severity.SUCCESS
    assert member.description == "Your EA access is now active!"
    assert member.section(SectionKind.INSTRUCTIONS).value == MEMBER_INSTRUCTIONS
    assert member.section(SectionKind.CREDENTIALS).value == "```ABCD-1234```"
    assert member.section(SectionKind.PLAN).value == "Monthly"
    assert DOWNLOAD_EXPIRY_NOTICE in member.section(SectionKind.DOWNLOAD).value

    assert newcomer.description == "Your EA access is ready! Join our Discord to get started."
    assert newcomer.section(SectionKind.INSTRUCTIONS).value == NEW_MEMBER_INSTRUCTIONS
    invite = newcomer.section(SectionKind.INVITE).value
    assert "https://discord.gg/abc" in invite
    assert INVITE_EXPIRY_NOTICE in invite
    assert newcomer.footer == BRANDING.footer


@pytest.mark.unit
@pytest.mark.parametrize("days_left,phrase", [(1, "in 1 day"), (3, "in 3 days")])
def test_expiry_reminder(days_left, phrase):
    payload = compose_expiry_reminder(
        record(expires_at=NOW + timedelta(days=days_left)),
        days_left=days_left,
        issued_at=NOW,
        branding=BRANDING,
    )

    assert payload.severity is Severity.WARNING
    assert phrase in payload.description
    assert payload.kinds == (
        SectionKind.CREDENTIALS,
        SectionKind.PLAN,
        SectionKind.CONTACT,
        SectionKind.EXPIRY,
        SectionKind.INSTRUCTIONS,
    )
    assert payload.section(SectionKind.EXPIRY).value.endswith(f"UTC ({phrase})")


@pytest.mark.unit
def test_expiry_notice_mentions_revocation():
    expired = record(expires_at=NOW - timedelta(days=1), plan=None)
    branding = BrandingConfig(renew_url="https://propquant.ai/renew")

    revoked = compose_expiry_notice(expired, roles_revoked=1, issued_at=NOW, branding=branding)
    untouched = compose_expiry_notice(expired, roles_revoked=0, issued_at=NOW, branding=branding)

    assert revoked.severity is Severity.ERROR
    assert SectionKind.PLAN not in revoked.kinds
    assert "has been removed" in revoked.section(SectionKind.EXPIRY).value
    assert "no longer active" in untouched.section(SectionKind.EXPIRY).value
    assert "https://propquant.ai/renew" in revoked.section(SectionKind.INSTRUCTIONS).value
