"""Unit tests for the Discord access provider."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from deliverybot.adapters.base_provider import (
    MemberRef,
    MessagingDisabledError,
    ProviderError,
    ProviderUnavailableError,
    RoleRef,
    SpaceRef,
    UnknownEntityError,
)
from deliverybot.adapters.discord_provider import DiscordProvider
from deliverybot.config import DiscordConfig
from deliverybot.core.models import NotificationPayload, NotificationSection, SectionKind, Severity
from tests.fakes import NOW


class FakeHTTPException(Exception):
    def __init__(self, message: str = "error", *, status: int = 400, code: int = 0) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class FakeNotFound(FakeHTTPException):
    def __init__(self, message: str = "Unknown", *, code: int = 10013) -> None:
        super().__init__(message, status=404, code=code)


class FakeForbidden(FakeHTTPException):
    def __init__(self, message: str = "Forbidden", *, code: int = 50013) -> None:
        super().__init__(message, status=403, code=code)


class FakeConnectionClosed(Exception):
    pass


class FakeLoginFailure(Exception):
    pass


class FakeDiscordIntents:
    """Minimal discord.Intents replacement for tests."""

    def __init__(self) -> None:
        self.guilds = False
        self.members = False
        self.dm_messages = False

    @classmethod
    def default(cls) -> "FakeDiscordIntents":
        return cls()


class FakeEmbed:
    def __init__(self, *, title: str, description: str, color: int, timestamp: object) -> None:
        self.title = title
        self.description = description
        self.color = color
        self.timestamp = timestamp
        self.fields: list[tuple[str, str, bool]] = []
        self.footer: str | None = None

    def add_field(self, *, name: str, value: str, inline: bool) -> None:
        self.fields.append((name, value, inline))

    def set_footer(self, *, text: str) -> None:
        self.footer = text


class FakeUser:
    def __init__(self, user_id: int, name: str, *, send_error: Exception | None = None) -> None:
        self.id = user_id
        self.name = name
        self.send_error = send_error
        self.sent: list[object] = []

    def __str__(self) -> str:
        return self.name

    async def send(self, *, embed: object) -> object:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(embed)
        return SimpleNamespace(id=7001)


class FakeDiscordClient:
    """Minimal discord.Client replacement for tests."""

    login_error: Exception | None = None

    def __init__(self, *, intents: FakeDiscordIntents) -> None:
        self.intents = intents
        self.user = FakeUser(999, "DeliveryBot#0001")
        self.guilds: list[object] = []
        self.users: dict[int, object] = {}
        self.channels: dict[int, object] = {}
        self.started_token: str | None = None
        self.closed = asyncio.Event()

    def event(self, coro):
        setattr(self, coro.__name__, coro)
        return coro

    async def start(self, token: str) -> None:
        self.started_token = token
        if self.login_error is not None:
            raise self.login_error
        await self.on_ready()
        await self.closed.wait()

    async def close(self) -> None:
        self.closed.set()

    def get_guild(self, guild_id: int) -> object | None:
        return next((g for g in self.guilds if g.id == guild_id), None)

    async def fetch_guild(self, guild_id: int) -> object:
        raise FakeNotFound("Unknown Guild", code=10004)

    def get_user(self, user_id: int) -> object | None:
        return self.users.get(user_id)

    async def fetch_user(self, user_id: int) -> object:
        user = self.users.get(user_id)
        if user is None:
            raise FakeNotFound("Unknown User")
        return user

    async def fetch_channel(self, channel_id: int) -> object:
        return self.channels[channel_id]


class FakeDiscordModule:
    """Minimal discord module replacement for tests."""

    Intents = FakeDiscordIntents
    Client = FakeDiscordClient
    Embed = FakeEmbed
    ChannelType = SimpleNamespace(text="text", voice="voice")
    HTTPException = FakeHTTPException
    NotFound = FakeNotFound
    Forbidden = FakeForbidden
    ConnectionClosed = FakeConnectionClosed
    LoginFailure = FakeLoginFailure

    @staticmethod
    def Object(id: int) -> object:  # noqa: N802
        return SimpleNamespace(id=id)


def _channel(channel_id: int, name: str, kind: str, *, can_invite: bool) -> SimpleNamespace:
    return SimpleNamespace(
        id=channel_id,
        name=name,
        type=kind,
        permissions_for=lambda member: SimpleNamespace(create_instant_invite=can_invite),
        create_invite=AsyncMock(return_value=SimpleNamespace(url=f"https://discord.gg/c{channel_id}")),
    )


def _guild() -> SimpleNamespace:
    member = SimpleNamespace(
        id=42,
        roles=[SimpleNamespace(id=1000), SimpleNamespace(id=501)],
        add_roles=AsyncMock(),
        remove_roles=AsyncMock(),
    )
    roles = {501: SimpleNamespace(id=501, name="Monthly")}
    channels = [
        _channel(10, "rules", "text", can_invite=False),
        _channel(11, "lounge", "voice", can_invite=True),
        _channel(12, "general", "text", can_invite=True),
    ]
    return SimpleNamespace(
        id=1000,
        name="PropQuant",
        me=SimpleNamespace(id=999),
        member=member,
        get_role=lambda role_id: roles.get(role_id),
        get_member=lambda user_id: None,
        get_channel=lambda channel_id: next((c for c in channels if c.id == channel_id), None),
        fetch_roles=AsyncMock(return_value=[SimpleNamespace(id=502, name="Quarterly")]),
        fetch_member=AsyncMock(side_effect=lambda user_id: member if user_id == 42 else _raise(FakeNotFound(code=10007))),
        fetch_channels=AsyncMock(return_value=channels),
    )


def _raise(error: Exception):
    raise error


@pytest.fixture(autouse=True)
def _reset_login_error():
    FakeDiscordClient.login_error = None
    yield
    FakeDiscordClient.login_error = None


def _provider(token: str = "bot-token", call_timeout: float = 10.0) -> DiscordProvider:
    with patch("deliverybot.adapters.discord_provider.importlib.import_module", return_value=FakeDiscordModule):
        return DiscordProvider(DiscordConfig(token=token, guild_id="1000", role_ids={}, call_timeout=call_timeout))


async def _started(provider: DiscordProvider) -> FakeDiscordClient:
    await provider.start()
    client = provider._client
    assert isinstance(client, FakeDiscordClient)
    client.guilds.append(_guild())
    return client


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_waits_for_ready_and_sets_intents():
    provider = _provider()

    client = await _started(provider)

    assert client.started_token == "bot-token"
    assert (client.intents.guilds, client.intents.members, client.intents.dm_messages) == (True, True, True)
    assert provider.is_ready is True
    assert provider.identity == "DeliveryBot#0001"

    await provider.stop()
    assert client.closed.is_set()
    assert provider.is_ready is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_requires_token():
    with pytest.raises(ValueError):
        await _provider(token="").start()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_surfaces_login_failure():
    FakeDiscordClient.login_error = FakeLoginFailure("Improper token has been passed.")
    provider = _provider()

    with pytest.raises(FakeLoginFailure):
        await provider.start()

    assert provider.is_ready is False
    assert provider.identity is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_gateway_events_are_reported_as_faults():
    provider = _provider()
    client = await _started(provider)

    await client.on_disconnect()
    assert provider.is_ready is False
    await client.on_resumed()
    assert provider.is_ready is True
    await client.on_error("on_message")

    faults = [provider.faults.get_nowait(), provider.faults.get_nowait()]
    assert [f.source for f in faults] == ["gateway", "event:on_message"]
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_calls_before_start_are_unavailable():
    with pytest.raises(ProviderUnavailableError):
        await _provider().fetch_user("42")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_user_maps_not_found():
    provider = _provider()
    client = await _started(provider)
    client.users[42] = FakeUser(42, "alice#0001")

    user = await provider.fetch_user("42")
    assert (user.id, user.name) == ("42", "alice#0001")

    with pytest.raises(UnknownEntityError):
        await provider.fetch_user("43")
    with pytest.raises(UnknownEntityError):
        await provider.fetch_user("not-a-snowflake")
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_member_role_lookup_and_grant():
    provider = _provider()
    client = await _started(provider)
    guild = client.guilds[0]

    space = await provider.fetch_space("1000")
    member = await provider.fetch_member(space, "42")

    assert space == SpaceRef(id="1000", name="PropQuant")
    assert member.role_ids == frozenset({"1000", "501"})
    assert await provider.fetch_role(space, "501") == RoleRef(id="501", name="Monthly")
    assert await provider.fetch_role(space, "502") == RoleRef(id="502", name="Quarterly")
    assert await provider.fetch_role(space, "503") is None

    await provider.add_role(member, RoleRef(id="502", name="Quarterly"), reason="quarterly purchase - alice")
    role_obj = guild.member.add_roles.await_args.args[0]
    assert role_obj.id == 502
    assert guild.member.add_roles.await_args.kwargs == {"reason": "quarterly purchase - alice"}

    with pytest.raises(UnknownEntityError):
        await provider.fetch_member(space, "77")
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remove_role_refetches_uncached_member():
    provider = _provider()
    client = await _started(provider)
    guild = client.guilds[0]

    await provider.remove_role(MemberRef(user_id="42", space_id="1000"), RoleRef(id="501", name="Monthly"))

    guild.fetch_member.assert_awaited_once_with(42)
    assert guild.member.remove_roles.await_args.args[0].id == 501
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_role_mutations_resolve_member_per_call_without_retaining_it():
    provider = _provider()
    client = await _started(provider)
    guild = client.guilds[0]
    space = await provider.fetch_space("1000")

    for _ in range(3):
        member = await provider.fetch_member(space, "42")
        await provider.add_role(member, RoleRef(id="501", name="Monthly"))

    # each grant re-resolves the member instead of reusing a stored object
    assert guild.fetch_member.await_count == 6
    assert set(provider._guilds) == {"1000"}
    assert not hasattr(provider, "_members")
    assert not hasattr(provider, "_channels")
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_role_mutation_prefers_gateway_cached_member():
    provider = _provider()
    client = await _started(provider)
    guild = client.guilds[0]
    live = SimpleNamespace(id=42, roles=[], add_roles=AsyncMock(), remove_roles=AsyncMock())
    guild.get_member = lambda user_id: live if user_id == 42 else None

    await provider.add_role(MemberRef(user_id="42", space_id="1000"), RoleRef(id="502", name="Quarterly"))

    assert live.add_roles.await_args.args[0].id == 502
    guild.fetch_member.assert_not_awaited()
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_channels_marks_invite_eligibility_and_creates_invite():
    provider = _provider()
    await _started(provider)
    space = SpaceRef(id="1000", name="PropQuant")

    channels = await provider.list_channels(space)

    assert [(c.id, c.is_text, c.can_create_invite) for c in channels] == [
        ("10", True, False),
        ("11", False, False),
        ("12", True, True),
    ]

    invite = await provider.create_invite(space, "12", max_age=86400, max_uses=1, unique=True, reason="r")

    assert invite.url == "https://discord.gg/c12"
    assert (invite.max_age, invite.max_uses) == (86400, 1)
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_private_message_renders_embed():
    provider = _provider()
    client = await _started(provider)
    user = FakeUser(42, "alice#0001")
    client.users[42] = user
    payload = NotificationPayload(
        title="🎉 Payment Successful - PropQuant.ai!",
        description="Your EA access is now active!",
        sections=(
            NotificationSection(SectionKind.INSTRUCTIONS, "📖 Next Steps", "steps"),
            NotificationSection(SectionKind.CREDENTIALS, "🔑 License Key", "```K```"),
            NotificationSection(SectionKind.PLAN, "📱 Plan", "Monthly", inline=True),
        ),
        severity=Severity.SUCCESS,
        footer="PropQuant.ai - Automated Trading Excellence",
        timestamp=NOW,
    )

    message_id = await provider.send_private_message("42", payload)

    assert message_id == "7001"
    embed = user.sent[0]
    assert embed.color == 0x5865F2
    assert embed.timestamp == NOW
    assert embed.footer == "PropQuant.ai - Automated Trading Excellence"
    assert [name for name, _, _ in embed.fields] == ["🔑 License Key", "📱 Plan", "📖 Next Steps"]
    assert embed.fields[1][2] is True
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,expected",
    [
        (FakeForbidden("Cannot send messages to this user", code=50007), MessagingDisabledError),
        (FakeForbidden("Missing Access", code=50001), ProviderError),
        (FakeHTTPException("Service Unavailable", status=503), ProviderUnavailableError),
        (FakeHTTPException("Bad Request", status=400), ProviderError),
        (FakeConnectionClosed("socket closed"), ProviderUnavailableError),
        (OSError("network down"), ProviderUnavailableError),
    ],
)
async def test_send_errors_are_translated(error, expected):
    provider = _provider()
    client = await _started(provider)
    client.users[42] = FakeUser(42, "alice#0001", send_error=error)
    payload = NotificationPayload("t", "d", (), Severity.SUCCESS, "f", NOW)

    with pytest.raises(expected) as exc_info:
        await provider.send_private_message("42", payload)

    if expected is ProviderError:
        assert not isinstance(exc_info.value, (MessagingDisabledError, ProviderUnavailableError))
    await provider.stop()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_calls_time_out_as_unavailable():
    provider = _provider(call_timeout=0.01)
    client = await _started(provider)
    hung = asyncio.Event()

    async def never_returns(user_id: int) -> object:
        await hung.wait()
        return None

    client.fetch_user = never_returns

    with pytest.raises(ProviderUnavailableError, match="timed out"):
        await provider.fetch_user("42")
    await provider.stop()
