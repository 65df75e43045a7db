"""Delivery orchestration: community access, then the confirmation DM.

One inbound purchase runs to completion per `deliver()` call:

1. the buyer must exist on the provider,
2. if a guild is configured, members get their plan role and non-members a
   single-use 24h invite (failures here degrade, never abort),
3. the confirmation is composed and sent as a private message (last external
   call; failures here are fatal for the request).

Nothing applied in step 2 is rolled back when step 3 fails.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping

from deliverybot.adapters.base_provider import (
    AccessProvider,
    MemberRef,
    MessagingDisabledError,
    ProviderError,
    ProviderUnavailableError,
    SpaceRef,
    UnknownEntityError,
)
from deliverybot.config import Config
from deliverybot.constants import INVITE_MAX_AGE_S, INVITE_MAX_USES, INVITE_UNIQUE
from deliverybot.core.composer import compose_delivery_notification
from deliverybot.core.errors import (
    CommunityIntegrationDegraded,
    DeliveryBlocked,
    InvalidRequest,
    ProviderUnavailable,
    RecipientNotFound,
)
from deliverybot.core.models import DeliveryRequest, DeliveryResult, MembershipOutcome

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeliveryOrchestrator:
    """Runs the purchase delivery workflow against an AccessProvider."""

    def __init__(
        self,
        provider: AccessProvider,
        config: Config,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.config = config
        self.clock = clock

    async def handle_payload(self, payload: Mapping[str, object]) -> DeliveryResult:
        """Validate an inbound webhook body and deliver it."""
        return await self.deliver(DeliveryRequest.from_payload(payload))

    async def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        """Deliver one purchase.

        Raises:
            InvalidRequest: buyer id or license key empty (no external call made)
            RecipientNotFound: provider does not know the buyer
            DeliveryBlocked: buyer does not accept DMs (community side effects kept)
            ProviderUnavailable: any other provider failure at lookup or send time
        """
        if not request.buyer_id.strip() or not request.license_key.strip():
            raise InvalidRequest("Missing required fields")

        logger.info("Delivery request for %s (%s), plan=%s", request.buyer_name, request.buyer_id, request.plan.value)

        try:
            await self.provider.fetch_user(request.buyer_id)
        except UnknownEntityError as e:
            raise RecipientNotFound("User not found") from e
        except ProviderUnavailableError as e:
            raise ProviderUnavailable(f"User lookup failed: {e}") from e
        except ProviderError as e:
            raise ProviderUnavailable(f"User lookup rejected: {e}", retryable=False) from e

        outcome = await self._resolve_membership(request)

        payload = compose_delivery_notification(
            request,
            outcome,
            issued_at=self.clock(),
            branding=self.config.branding,
        )

        try:
            await self.provider.send_private_message(request.buyer_id, payload)
        except MessagingDisabledError as e:
            raise DeliveryBlocked("User has DMs disabled", outcome=outcome) from e
        except UnknownEntityError as e:
            raise RecipientNotFound("User not found", outcome=outcome) from e
        except ProviderUnavailableError as e:
            raise ProviderUnavailable(f"Message send failed: {e}", outcome=outcome) from e
        except ProviderError as e:
            raise ProviderUnavailable(f"Message send rejected: {e}", outcome=outcome, retryable=False) from e

        result = DeliveryResult.from_outcome(outcome)
        logger.info(
            "DM sent to %s (path=%s, role_assigned=%s, invite_created=%s)",
            request.buyer_name,
            result.path.value,
            result.role_assigned,
            result.invite_created,
        )
        return result

    # ==================== Community phase ====================

    async def _resolve_membership(self, request: DeliveryRequest) -> MembershipOutcome:
        guild_id = self.config.discord.guild_id
        if not guild_id:
            return MembershipOutcome()

        try:
            space = await self.provider.fetch_space(guild_id)
        except ProviderError as e:
            self._degraded(request, CommunityIntegrationDegraded("fetch_space", str(e)))
            return MembershipOutcome()
        except Exception as e:
            self._degraded(request, CommunityIntegrationDegraded("fetch_space", repr(e)), exc_info=True)
            return MembershipOutcome()

        try:
            member = await self.provider.fetch_member(space, request.buyer_id)
        except UnknownEntityError:
            logger.info("User %s not in server - creating invite", request.buyer_id)
            invite_url = await self._create_invite(space, request)
            return MembershipOutcome(is_member=False, invite_url=invite_url, community_checked=True)
        except ProviderError as e:
            self._degraded(request, CommunityIntegrationDegraded("fetch_member", str(e)))
            return MembershipOutcome()
        except Exception as e:
            self._degraded(request, CommunityIntegrationDegraded("fetch_member", repr(e)), exc_info=True)
            return MembershipOutcome()

        logger.info("User %s in server - assigning role", request.buyer_id)
        granted = await self._apply_grant(space, member, request)
        return MembershipOutcome(is_member=True, grant_applied=granted, community_checked=True)

    async def _apply_grant(self, space: SpaceRef, member: MemberRef, request: DeliveryRequest) -> bool:
        """Give the member the role mapped to the plan tier. Returns whether it is held now."""
        role_id = self.config.discord.role_ids.get(request.plan)
        if role_id is None:
            logger.info("No role configured for plan %s; skipping grant", request.plan.value)
            return False

        if role_id in member.role_ids:
            logger.info("User %s already has the %s role", request.buyer_id, request.plan.value)
            return True

        try:
            role = await self.provider.fetch_role(space, role_id)
            if role is None:
                raise CommunityIntegrationDegraded("fetch_role", f"role {role_id} not found in guild {space.id}")
            await self.provider.add_role(member, role, reason=self._reason(request))
        except CommunityIntegrationDegraded as e:
            self._degraded(request, e)
            return False
        except ProviderError as e:
            self._degraded(request, CommunityIntegrationDegraded("add_role", str(e)))
            return False
        except Exception as e:
            self._degraded(request, CommunityIntegrationDegraded("add_role", repr(e)), exc_info=True)
            return False

        logger.info("Role %s assigned to %s", role.name, request.buyer_id)
        return True

    async def _create_invite(self, space: SpaceRef, request: DeliveryRequest) -> str | None:
        """Create a single-use invite on the first channel that allows it."""
        try:
            channels = await self.provider.list_channels(space)
        except ProviderError as e:
            self._degraded(request, CommunityIntegrationDegraded("list_channels", str(e)))
            return None
        except Exception as e:
            self._degraded(request, CommunityIntegrationDegraded("list_channels", repr(e)), exc_info=True)
            return None

        channel = next((c for c in channels if c.is_text and c.can_create_invite), None)
        if channel is None:
            logger.warning("No text channel in guild %s allows invite creation; sending credentials only", space.id)
            return None

        try:
            invite = await self.provider.create_invite(
                space,
                channel.id,
                max_age=INVITE_MAX_AGE_S,
                max_uses=INVITE_MAX_USES,
                unique=INVITE_UNIQUE,
                reason=self._reason(request),
            )
        except ProviderError as e:
            self._degraded(request, CommunityIntegrationDegraded("create_invite", str(e)))
            return None
        except Exception as e:
            self._degraded(request, CommunityIntegrationDegraded("create_invite", repr(e)), exc_info=True)
            return None

        logger.info("Invite created on #%s for %s", channel.name, request.buyer_id)
        return invite.url

    @staticmethod
    def _reason(request: DeliveryRequest) -> str:
        return f"{request.plan.value} purchase - {request.buyer_name}"

    @staticmethod
    def _degraded(request: DeliveryRequest, error: CommunityIntegrationDegraded, *, exc_info: bool = False) -> None:
        logger.warning(
            "Community integration degraded for %s at %s: %s",
            request.buyer_id,
            error.step,
            error.detail,
            exc_info=exc_info,
        )
