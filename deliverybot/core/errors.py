"""Delivery error taxonomy.

Every failure a delivery caller can observe is a `DeliveryError` carrying a
machine-readable `kind`, the HTTP status the inbound trigger answers with, and
whether a retry can help. When community side effects were already applied
before the failure (a role grant or an invite), `outcome` records them; they
are never rolled back.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deliverybot.core.models import MembershipOutcome


class DeliveryError(Exception):
    """Base class for failures surfaced to the delivery caller."""

    kind = "delivery_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        outcome: "MembershipOutcome | None" = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.outcome = outcome
        if retryable is not None:
            self.retryable = retryable


class InvalidRequest(DeliveryError):
    """Required request fields are missing or malformed. No external call was made."""

    kind = "invalid_request"
    status_code = 400


class DeliveryBlocked(DeliveryError):
    """The recipient does not accept private messages from the bot."""

    kind = "delivery_blocked"
    status_code = 403


class RecipientNotFound(DeliveryError):
    """The provider does not know the recipient."""

    kind = "recipient_not_found"
    status_code = 404


class ProviderUnavailable(DeliveryError):
    """Provider failure. Retryable unless the provider rejected the call outright."""

    kind = "provider_unavailable"
    status_code = 500
    retryable = True


class CommunityIntegrationDegraded(Exception):
    """A guild, channel or role step failed; delivery continues without it.

    Raised and caught inside the orchestrator and sweeper only.
    """

    kind = "community_integration_degraded"

    def __init__(self, step: str, detail: str) -> None:
        super().__init__(f"{step}: {detail}")
        self.step = step
        self.detail = detail
