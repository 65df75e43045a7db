"""HTTP surface: health check and the purchase delivery webhook.

Runs uvicorn inside the daemon's event loop so the Discord session and the
HTTP handlers share one loop.
"""

from __future__ import annotations

import asyncio
import logging
import time

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from deliverybot import __version__
from deliverybot.adapters.base_provider import AccessProvider
from deliverybot.api_models import DeliverErrorDTO, DeliverRequest, DeliverResponseDTO, HealthDTO
from deliverybot.constants import API_START_TIMEOUT_S, API_STOP_TIMEOUT_S, API_TIMEOUT_KEEP_ALIVE_S
from deliverybot.core.errors import DeliveryError, InvalidRequest
from deliverybot.core.orchestrator import DeliveryOrchestrator

logger = logging.getLogger(__name__)


def error_body(error: DeliveryError) -> DeliverErrorDTO:
    """Structured body for a failed delivery, including side effects already applied."""
    outcome = error.outcome
    return DeliverErrorDTO(
        error=error.kind,
        message=error.message,
        retryable=error.retryable,
        role_assigned=bool(outcome and outcome.grant_applied),
        invite_created=bool(outcome and outcome.invite_url),
    )


class APIServer:
    """HTTP API server on host:port."""

    def __init__(
        self,
        orchestrator: DeliveryOrchestrator,
        provider: AccessProvider,
        *,
        host: str,
        port: int,
    ) -> None:
        self.orchestrator = orchestrator
        self.provider = provider
        self.host = host
        self.port = port
        self.started_at = time.monotonic()
        self.app = FastAPI(title="deliverybot", version=__version__)
        self._setup_routes()
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[None] | None = None
        self._running = False

    def health(self) -> HealthDTO:
        ready = self.provider.is_ready
        return HealthDTO(
            status="online" if ready else "starting",
            bot=(self.provider.identity or "not ready") if ready else "not ready",
            uptime=round(time.monotonic() - self.started_at, 3),
        )

    def _setup_routes(self) -> None:
        """Set up all HTTP endpoints."""

        @self.app.exception_handler(RequestValidationError)
        async def _invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:  # pyright: ignore
            error = InvalidRequest("Invalid request body")
            logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
            return JSONResponse(error_body(error).model_dump(), status_code=error.status_code)

        @self.app.get("/")
        @self.app.get("/health")
        async def health() -> HealthDTO:  # pyright: ignore
            """Health check endpoint."""
            return self.health()

        @self.app.post("/deliver")
        async def deliver(body: DeliverRequest) -> JSONResponse:  # pyright: ignore
            """Deliver one purchase: community access plus the confirmation DM."""
            try:
                result = await self.orchestrator.handle_payload(body.model_dump())
            except DeliveryError as e:
                logger.warning("Delivery failed for %s (%s): %s", body.discord_id, e.kind, e.message)
                return JSONResponse(error_body(e).model_dump(), status_code=e.status_code)
            except Exception as e:
                logger.exception("Unexpected error delivering to %s", body.discord_id)
                dto = DeliverErrorDTO(error="internal_error", message=str(e) or type(e).__name__)
                return JSONResponse(dto.model_dump(), status_code=500)

            dto = DeliverResponseDTO.model_validate(result.to_dict())
            return JSONResponse(dto.model_dump())

    async def start(self) -> None:
        """Start uvicorn as a background task and wait until it listens."""
        if self.server_task and not self.server_task.done():
            logger.warning("API server already running; skipping start")
            return

        self._running = True
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            timeout_keep_alive=API_TIMEOUT_KEEP_ALIVE_S,
        )
        self.server = uvicorn.Server(config)
        server = self.server

        # Run server in background task. Avoid uvicorn's signal handling to keep daemon in control.
        serve_coro = server._serve() if hasattr(server, "_serve") else server.serve()
        self.server_task = asyncio.create_task(serve_coro, name="api-server")
        self.server_task.add_done_callback(self._on_server_task_done)

        deadline = time.monotonic() + API_START_TIMEOUT_S
        while not server.started:
            if self.server_task.done():
                exc = self.server_task.exception()
                raise RuntimeError("API server exited during startup") from exc
            if time.monotonic() >= deadline:
                raise TimeoutError("API server failed to start within timeout")
            await asyncio.sleep(0.1)

        logger.info("Server running on port %d", self.port)

    async def stop(self) -> None:
        """Stop the uvicorn server task safely."""
        self._running = False
        server = self.server
        if server:
            if server.started:
                server.should_exit = True
            elif self.server_task:
                self.server_task.cancel()

        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=API_STOP_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timed out stopping API server; cancelling task")
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
        logger.info("API server stopped")

    def _on_server_task_done(self, task: asyncio.Task[None]) -> None:
        if not self._running or task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("API server task crashed: %s", exc, exc_info=exc)
        else:
            logger.error("API server task exited unexpectedly")
