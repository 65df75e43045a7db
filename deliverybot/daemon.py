"""deliverybot daemon: Discord session, HTTP webhook and the daily expiry sweep."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

from deliverybot.adapters.base_provider import AccessProvider, ProviderUnavailableError
from deliverybot.adapters.discord_provider import DiscordProvider
from deliverybot.adapters.license_store import LicenseStore, RestLicenseStore
from deliverybot.api_server import APIServer
from deliverybot.config import Config, load_config
from deliverybot.constants import STARTUP_MAX_RETRIES, STARTUP_RETRY_DELAYS
from deliverybot.core.orchestrator import DeliveryOrchestrator
from deliverybot.core.sweeper import ExpirySweeper
from deliverybot.cron.scheduler import SweepScheduler
from deliverybot.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _is_retryable_startup_error(error: Exception) -> bool:
    """Check if startup error is transient and worth retrying.

    Network failures and provider outages are retried. Configuration errors
    and rejected credentials (discord.py `LoginFailure`) are not.
    """
    if type(error).__name__ == "LoginFailure":
        return False
    if isinstance(error, (ProviderUnavailableError, OSError, asyncio.TimeoutError)):
        return True
    retryable_messages = ("name resolution", "connection refused", "timed out", "temporary failure")
    error_msg = str(error).lower()
    return any(msg in error_msg for msg in retryable_messages)


class DeliveryDaemon:
    """Owns the provider session and wires every component to it."""

    def __init__(
        self,
        config: Config,
        *,
        provider: AccessProvider | None = None,
        store: LicenseStore | None = None,
    ) -> None:
        self.config = config
        self.provider = provider if provider is not None else DiscordProvider(config.discord)
        if store is None and config.license_store.enabled:
            store = RestLicenseStore(config.license_store)
        self.store = store
        self.orchestrator: DeliveryOrchestrator | None = None
        self.sweeper: ExpirySweeper | None = None
        self.scheduler: SweepScheduler | None = None
        self.api_server: APIServer | None = None
        self.shutdown_event = asyncio.Event()
        self._fault_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Bring components up in dependency order.

        The provider must be ready before anything that uses it is built, and
        the webhook only opens once deliveries can be served.
        """
        logger.info("Starting deliverybot...")
        try:
            await self.provider.start()
        except Exception:
            try:
                await self.provider.stop()
            except Exception as stop_error:
                logger.warning("Error closing provider after failed start: %s", stop_error)
            raise
        self._fault_task = asyncio.create_task(self._fault_watch_loop(), name="provider-fault-watch")

        try:
            self.orchestrator = DeliveryOrchestrator(self.provider, self.config)
            self.sweeper = ExpirySweeper(self.provider, self.store, self.config)

            if self.store is not None:
                self.scheduler = SweepScheduler(self.sweeper, self.config.sweep)
                self.scheduler.start()
            else:
                logger.info("Expiry monitor disabled (license store url/key not configured)")

            self.api_server = APIServer(
                self.orchestrator,
                self.provider,
                host=self.config.api.host,
                port=self.config.api.port,
            )
            await self.api_server.start()
        except Exception:
            await self.stop()
            raise
        logger.info("deliverybot is running")

    async def stop(self) -> None:
        """Stop the daemon, reverse of start order."""
        logger.info("Stopping deliverybot...")
        if self.api_server:
            await self.api_server.stop()
        if self.scheduler:
            await self.scheduler.stop()
            logger.info("Expiry monitor stopped")
        if self._fault_task and not self._fault_task.done():
            self._fault_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._fault_task
        self.api_server = None
        self.scheduler = None
        await self.provider.stop()
        logger.info("Discord session closed")

    async def _fault_watch_loop(self) -> None:
        """Drain asynchronous provider faults into the log."""
        while True:
            fault = await self.provider.faults.get()
            logger.error("Discord error (%s): %s", fault.source, fault.message)


def _handle_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, object]) -> None:
    exc = context.get("exception")
    message = context.get("message", "unhandled exception in event loop")
    if isinstance(exc, BaseException):
        logger.error("Unhandled rejection: %s", message, exc_info=exc)
    else:
        logger.error("Unhandled rejection: %s", message)


async def main() -> None:
    """Main entry point."""
    setup_logging()
    try:
        config = load_config()
    except Exception as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)
    # re-apply: .env may set DELIVERYBOT_LOG_LEVEL / DELIVERYBOT_LOG_JSON
    setup_logging()

    daemon = DeliveryDaemon(config)
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_handle_loop_exception)

    def signal_handler(signum: int) -> None:
        """Handle termination signals."""
        logger.info("Received %s signal...", signal.Signals(signum).name)
        daemon.shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, signal_handler, signum)

    try:
        # Start daemon with retry logic for transient network errors
        for attempt in range(STARTUP_MAX_RETRIES):
            try:
                await daemon.start()
                break
            except Exception as e:
                if type(e).__name__ == "LoginFailure":
                    logger.error("Login failed: %s", e)
                    sys.exit(1)
                if not _is_retryable_startup_error(e):
                    logger.error("Startup failed (non-retryable): %s", e, exc_info=True)
                    sys.exit(1)
                if attempt == STARTUP_MAX_RETRIES - 1:
                    logger.error("Startup failed after %d attempts: %s", STARTUP_MAX_RETRIES, e, exc_info=True)
                    sys.exit(1)

                delay = STARTUP_RETRY_DELAYS[attempt]
                logger.warning(
                    "Startup failed (attempt %d/%d): %s. Retrying in %ds...",
                    attempt + 1,
                    STARTUP_MAX_RETRIES,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)

        await daemon.shutdown_event.wait()

    except KeyboardInterrupt:
        logger.info("Received interrupt signal...")
    finally:
        try:
            await daemon.stop()
        except Exception as e:
            logger.error("Error during daemon stop: %s", e)


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
