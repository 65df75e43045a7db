"""Daily expiry sweep: renewal reminders and access revocation.

Stateless between runs. Every record is evaluated on its own; a failure on
one record is logged, recorded in the report and the sweep moves on. Nothing
is written back to the license store, so a record inside the reminder window
is reminded again on every sweep until it expires.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from deliverybot.adapters.base_provider import (
    AccessProvider,
    MessagingDisabledError,
    ProviderError,
    SpaceRef,
    UnknownEntityError,
)
from deliverybot.adapters.license_store import LicenseStore
from deliverybot.config import Config
from deliverybot.core.composer import compose_expiry_notice, compose_expiry_reminder
from deliverybot.core.errors import DeliveryBlocked, ProviderUnavailable, RecipientNotFound
from deliverybot.core.models import ExpiryRecord, NotificationPayload, SweepFailure, SweepReport
from deliverybot.core.orchestrator import utcnow

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Scans expiring licenses and acts on each one through the provider."""

    def __init__(
        self,
        provider: AccessProvider,
        store: LicenseStore | None,
        config: Config,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.provider = provider
        self.store = store
        self.config = config
        self.clock = clock
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def sweep(self) -> SweepReport:
        started = self.clock()
        if self.store is None:
            logger.debug("License store not configured; expiry sweep disabled")
            return SweepReport(started_at=started, finished_at=started, enabled=False)
        if self._running:
            logger.warning("Expiry sweep already running; skipping this run")
            return SweepReport(started_at=started, finished_at=started, skipped_overlap=True)

        self._running = True
        report = SweepReport(started_at=started)
        logger.info("Daily license check started")
        try:
            await self._run(report, started)
        finally:
            self._running = False
            report.finished_at = self.clock()
        logger.info("Daily license check finished: %s", report.summary())
        return report

    async def _run(self, report: SweepReport, now: datetime) -> None:
        assert self.store is not None
        window = self.config.sweep.reminder_days
        try:
            records = await self.store.fetch_expiring(now=now, within_days=window)
        except ProviderError as e:
            logger.error("Could not fetch expiring licenses: %s", e)
            report.failures.append(SweepFailure(email="*", kind=ProviderUnavailable.kind, detail=str(e)))
            return

        space: SpaceRef | None = None
        space_error: str | None = None
        guild_id = self.config.discord.guild_id
        if guild_id:
            try:
                space = await self.provider.fetch_space(guild_id)
            except ProviderError as e:
                space_error = str(e)
                logger.warning("Guild %s unavailable for this sweep: %s", guild_id, e)
            except Exception as e:
                space_error = repr(e)
                logger.error("Unexpected error resolving guild %s: %s", guild_id, e, exc_info=True)

        for record in records:
            report.examined += 1
            try:
                await self._process(record, now, space, space_error, report)
            except (DeliveryBlocked, RecipientNotFound, ProviderUnavailable) as e:
                logger.warning("Expiry handling failed for %s (%s): %s", record.email, e.kind, e.message)
                report.failures.append(SweepFailure(email=record.email, kind=e.kind, detail=e.message))
            except Exception as e:
                logger.error("Unexpected error handling expiry for %s: %s", record.email, e, exc_info=True)
                report.failures.append(SweepFailure(email=record.email, kind=ProviderUnavailable.kind, detail=repr(e)))

    async def _process(
        self,
        record: ExpiryRecord,
        now: datetime,
        space: SpaceRef | None,
        space_error: str | None,
        report: SweepReport,
    ) -> None:
        days_left = record.days_until_expiry(now)
        if days_left > self.config.sweep.reminder_days:
            return
        if not record.buyer_id:
            raise RecipientNotFound("No Discord id on license record")

        if days_left > 0:
            payload = compose_expiry_reminder(
                record, days_left=days_left, issued_at=now, branding=self.config.branding
            )
            await self._notify(record, payload)
            report.reminders_sent += 1
            logger.info("Renewal reminder sent to %s (%d days left)", record.email, days_left)
            return

        if space_error is not None:
            raise ProviderUnavailable(f"Guild unavailable, revocation postponed: {space_error}")
        revoked = await self._revoke(record, space, report)
        report.revocations += 1
        logger.info("Access revoked for %s (%d roles removed)", record.email, revoked)

        payload = compose_expiry_notice(record, roles_revoked=revoked, issued_at=now, branding=self.config.branding)
        await self._notify(record, payload)

    async def _revoke(self, record: ExpiryRecord, space: SpaceRef | None, report: SweepReport) -> int:
        """Remove every configured plan role the buyer holds.

        Each removal is counted on `report.roles_revoked` as it happens, so a
        failure part way through still reports the roles already taken away.
        Returns how many were removed.
        """
        if space is None:
            return 0
        assert record.buyer_id is not None
        try:
            member = await self.provider.fetch_member(space, record.buyer_id)
        except UnknownEntityError:
            logger.info("User %s no longer in server; nothing to revoke", record.buyer_id)
            return 0
        except ProviderError as e:
            raise ProviderUnavailable(f"Member lookup failed: {e}") from e

        removed = 0
        for tier, role_id in self.config.discord.role_ids.items():
            if role_id not in member.role_ids:
                continue
            try:
                role = await self.provider.fetch_role(space, role_id)
                if role is None:
                    logger.warning("Configured %s role %s not found in guild %s", tier.value, role_id, space.id)
                    continue
                await self.provider.remove_role(member, role, reason=f"License expired - {record.email}")
            except ProviderError as e:
                raise ProviderUnavailable(f"Role removal failed after {removed} removed: {e}") from e
            removed += 1
            report.roles_revoked += 1
        return removed

    async def _notify(self, record: ExpiryRecord, payload: NotificationPayload) -> None:
        assert record.buyer_id is not None
        try:
            await self.provider.send_private_message(record.buyer_id, payload)
        except MessagingDisabledError as e:
            raise DeliveryBlocked("User has DMs disabled") from e
        except UnknownEntityError as e:
            raise RecipientNotFound("User not found") from e
        except ProviderError as e:
            raise ProviderUnavailable(f"Message send failed: {e}") from e
