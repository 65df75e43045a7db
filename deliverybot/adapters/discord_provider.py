"""Discord access provider for deliverybot."""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import logging
from types import ModuleType
from typing import TYPE_CHECKING, Awaitable, Protocol, TypeVar

from deliverybot.adapters.base_provider import (
    AccessProvider,
    ChannelRef,
    InviteRef,
    MemberRef,
    MessagingDisabledError,
    ProviderError,
    ProviderUnavailableError,
    RoleRef,
    SpaceRef,
    UnknownEntityError,
    UserRef,
)
from deliverybot.constants import DEFAULT_PROVIDER_CALL_TIMEOUT_S, DISCORD_CANNOT_DM_USER, PROVIDER_READY_TIMEOUT_S

if TYPE_CHECKING:
    from deliverybot.config import DiscordConfig
    from deliverybot.core.models import NotificationPayload

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DiscordClientLike(Protocol):
    """Minimal discord.py client surface used by the provider."""

    user: object | None
    guilds: list[object]

    def event(self, coro: object) -> object: ...

    async def start(self, token: str) -> None: ...

    async def close(self) -> None: ...


class DiscordProvider(AccessProvider):
    """Access provider backed by a discord.py bot account."""

    PROVIDER_KEY = "discord"

    def __init__(self, config: "DiscordConfig") -> None:
        super().__init__()
        self._discord: ModuleType = importlib.import_module("discord")
        self._token = (config.token or "").strip()
        self._call_timeout = config.call_timeout or DEFAULT_PROVIDER_CALL_TIMEOUT_S
        self._client: DiscordClientLike | None = None
        self._gateway_task: asyncio.Task[None] | None = None
        self._ready_event = asyncio.Event()
        self._connected = False
        self._stopping = False
        # Raw guilds behind SpaceRefs. Members and channels are resolved per
        # call through discord.py's own gateway cache.
        self._guilds: dict[str, object] = {}

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Log in, start the gateway task and wait for READY."""
        if not self._token:
            raise ValueError("DISCORD_BOT_TOKEN is required to start the Discord provider")

        intents = self._discord.Intents.default()
        intents.guilds = True
        intents.members = True
        intents.dm_messages = True

        self._stopping = False
        self._client = self._discord.Client(intents=intents)
        self._register_gateway_handlers()
        self._ready_event.clear()

        logger.info("Logging in to Discord...")
        self._gateway_task = asyncio.create_task(self._client.start(self._token), name="discord-gateway")
        self._gateway_task.add_done_callback(self._on_gateway_done)

        ready_waiter = asyncio.create_task(self._ready_event.wait())
        try:
            await asyncio.wait(
                {ready_waiter, self._gateway_task},
                timeout=PROVIDER_READY_TIMEOUT_S,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_waiter.cancel()

        if self._ready_event.is_set():
            return
        if self._gateway_task.done() and not self._gateway_task.cancelled():
            exc = self._gateway_task.exception()
            if exc is not None:
                raise exc
            raise RuntimeError("Discord gateway exited before becoming ready")
        raise RuntimeError(f"Discord provider did not become ready within {PROVIDER_READY_TIMEOUT_S:.0f} seconds")

    async def stop(self) -> None:
        """Close the client and cancel the gateway task."""
        self._stopping = True
        self._connected = False
        if self._client is not None:
            await self._client.close()
        if self._gateway_task and not self._gateway_task.done():
            self._gateway_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._gateway_task

    @property
    def is_ready(self) -> bool:
        return self._ready_event.is_set() and self._connected

    @property
    def identity(self) -> str | None:
        if self._client is None or self._client.user is None or not self._ready_event.is_set():
            return None
        return str(self._client.user)

    def _register_gateway_handlers(self) -> None:
        if self._client is None:
            raise ProviderError("Discord client not initialized")

        async def on_ready() -> None:
            self._connected = True
            self._ready_event.set()
            guilds = getattr(self._client, "guilds", None) or []
            logger.info("Bot logged in as %s", self.identity)
            logger.info("Serving %d servers", len(guilds))

        async def on_disconnect() -> None:
            self._connected = False
            if not self._stopping:
                self.report_fault("gateway", "disconnected from Discord")

        async def on_resumed() -> None:
            self._connected = True
            logger.info("Discord session resumed")

        async def on_error(event_method: str, *args: object, **kwargs: object) -> None:
            self.report_fault(f"event:{event_method}", "unhandled exception in Discord event handler")

        self._client.event(on_ready)
        self._client.event(on_disconnect)
        self._client.event(on_resumed)
        self._client.event(on_error)

    def _on_gateway_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or self._stopping:
            return
        exc = task.exception()
        self._connected = False
        if exc is not None:
            logger.error("Discord gateway task crashed: %s", exc)
            self.report_fault("gateway", f"gateway task crashed: {exc}")
        else:
            self.report_fault("gateway", "gateway task exited")

    # ==================== Call plumbing ====================

    def _require_client(self) -> DiscordClientLike:
        if self._client is None:
            raise ProviderUnavailableError("Discord client not started")
        return self._client

    @staticmethod
    def _snowflake(entity: str, value: str) -> int:
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise UnknownEntityError(entity, str(value), "not a valid Discord id") from e

    async def _call(self, awaitable: Awaitable[T], *, op: str, entity: str, entity_id: str) -> T:
        """Await a discord.py call with a timeout, translating its errors."""
        discord = self._discord
        try:
            return await asyncio.wait_for(awaitable, timeout=self._call_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailableError(f"{op} timed out after {self._call_timeout:.0f}s") from e
        except discord.NotFound as e:
            raise UnknownEntityError(entity, entity_id, str(e)) from e
        except discord.Forbidden as e:
            if getattr(e, "code", None) == DISCORD_CANNOT_DM_USER:
                raise MessagingDisabledError(f"{entity} {entity_id} does not accept direct messages") from e
            raise ProviderError(f"{op} forbidden: {e}") from e
        except discord.HTTPException as e:
            if (getattr(e, "status", 0) or 0) >= 500:
                raise ProviderUnavailableError(f"{op} failed with Discord server error: {e}") from e
            raise ProviderError(f"{op} failed: {e}") from e
        except (discord.ConnectionClosed, OSError) as e:
            raise ProviderUnavailableError(f"{op} failed: {e}") from e

    async def _guild(self, space: SpaceRef) -> object:
        cached = self._guilds.get(space.id)
        if cached is not None:
            return cached
        client = self._require_client()
        guild_id = self._snowflake("guild", space.id)
        guild = client.get_guild(guild_id) or await self._call(  # type: ignore[attr-defined]
            client.fetch_guild(guild_id), op="fetch_guild", entity="guild", entity_id=space.id  # type: ignore[attr-defined]
        )
        self._guilds[space.id] = guild
        return guild

    async def _raw_member(self, member: MemberRef) -> object:
        guild = await self._guild(SpaceRef(id=member.space_id, name=""))
        snowflake = self._snowflake("member", member.user_id)
        raw = guild.get_member(snowflake)  # type: ignore[attr-defined]
        if raw is not None:
            return raw
        return await self._call(
            guild.fetch_member(snowflake),  # type: ignore[attr-defined]
            op="fetch_member",
            entity="member",
            entity_id=member.user_id,
        )

    # ==================== Lookups ====================

    async def fetch_user(self, user_id: str) -> UserRef:
        client = self._require_client()
        user = await self._call(
            client.fetch_user(self._snowflake("user", user_id)),  # type: ignore[attr-defined]
            op="fetch_user",
            entity="user",
            entity_id=user_id,
        )
        return UserRef(id=str(user.id), name=str(user))

    async def fetch_space(self, space_id: str) -> SpaceRef:
        self._guilds.pop(space_id, None)
        guild = await self._guild(SpaceRef(id=space_id, name=""))
        return SpaceRef(id=str(guild.id), name=str(guild.name))  # type: ignore[attr-defined]

    async def fetch_member(self, space: SpaceRef, user_id: str) -> MemberRef:
        guild = await self._guild(space)
        raw = await self._call(
            guild.fetch_member(self._snowflake("member", user_id)),  # type: ignore[attr-defined]
            op="fetch_member",
            entity="member",
            entity_id=user_id,
        )
        role_ids = frozenset(str(role.id) for role in getattr(raw, "roles", []))
        return MemberRef(user_id=user_id, space_id=space.id, role_ids=role_ids)

    async def fetch_role(self, space: SpaceRef, role_id: str) -> RoleRef | None:
        guild = await self._guild(space)
        wanted = self._snowflake("role", role_id)
        role = guild.get_role(wanted)  # type: ignore[attr-defined]
        if role is None:
            roles = await self._call(guild.fetch_roles(), op="fetch_roles", entity="guild", entity_id=space.id)  # type: ignore[attr-defined]
            role = next((r for r in roles if r.id == wanted), None)
        if role is None:
            return None
        return RoleRef(id=str(role.id), name=str(role.name))

    async def list_channels(self, space: SpaceRef) -> list[ChannelRef]:
        client = self._require_client()
        guild = await self._guild(space)
        channels = await self._call(guild.fetch_channels(), op="fetch_channels", entity="guild", entity_id=space.id)  # type: ignore[attr-defined]

        me = getattr(guild, "me", None)
        if me is None and client.user is not None:
            me = await self._call(
                guild.fetch_member(client.user.id),  # type: ignore[attr-defined]
                op="fetch_member",
                entity="member",
                entity_id=str(client.user.id),  # type: ignore[attr-defined]
            )

        refs: list[ChannelRef] = []
        for channel in channels:
            is_text = getattr(channel, "type", None) == self._discord.ChannelType.text
            can_invite = bool(is_text and me is not None and channel.permissions_for(me).create_instant_invite)
            refs.append(ChannelRef(id=str(channel.id), name=str(channel.name), is_text=is_text, can_create_invite=can_invite))
        return refs

    # ==================== Mutations ====================

    async def add_role(self, member: MemberRef, role: RoleRef, *, reason: str | None = None) -> None:
        raw = await self._raw_member(member)
        role_obj = self._discord.Object(id=self._snowflake("role", role.id))
        await self._call(raw.add_roles(role_obj, reason=reason), op="add_roles", entity="role", entity_id=role.id)  # type: ignore[attr-defined]

    async def remove_role(self, member: MemberRef, role: RoleRef, *, reason: str | None = None) -> None:
        raw = await self._raw_member(member)
        role_obj = self._discord.Object(id=self._snowflake("role", role.id))
        await self._call(raw.remove_roles(role_obj, reason=reason), op="remove_roles", entity="role", entity_id=role.id)  # type: ignore[attr-defined]

    async def create_invite(
        self,
        space: SpaceRef,
        channel_id: str,
        *,
        max_age: int,
        max_uses: int,
        unique: bool,
        reason: str | None = None,
    ) -> InviteRef:
        guild = await self._guild(space)
        snowflake = self._snowflake("channel", channel_id)
        channel = guild.get_channel(snowflake)  # type: ignore[attr-defined]
        if channel is None:
            client = self._require_client()
            channel = await self._call(
                client.fetch_channel(snowflake),  # type: ignore[attr-defined]
                op="fetch_channel",
                entity="channel",
                entity_id=channel_id,
            )
        invite = await self._call(
            channel.create_invite(max_age=max_age, max_uses=max_uses, unique=unique, reason=reason),  # type: ignore[attr-defined]
            op="create_invite",
            entity="channel",
            entity_id=channel_id,
        )
        return InviteRef(url=str(invite.url), channel_id=channel_id, max_age=max_age, max_uses=max_uses)

    async def send_private_message(self, user_id: str, payload: "NotificationPayload") -> str:
        client = self._require_client()
        snowflake = self._snowflake("user", user_id)
        user = client.get_user(snowflake) or await self._call(  # type: ignore[attr-defined]
            client.fetch_user(snowflake), op="fetch_user", entity="user", entity_id=user_id  # type: ignore[attr-defined]
        )
        message = await self._call(
            user.send(embed=self.render_embed(payload)),
            op="send_dm",
            entity="user",
            entity_id=user_id,
        )
        return str(message.id)

    def render_embed(self, payload: "NotificationPayload") -> object:
        """Turn a payload into a discord.Embed, fields in section order."""
        embed = self._discord.Embed(
            title=payload.title,
            description=payload.description,
            color=payload.severity.color,
            timestamp=payload.timestamp,
        )
        for section in payload.sections:
            embed.add_field(name=section.name, value=section.value, inline=section.inline)
        embed.set_footer(text=payload.footer)
        return embed
