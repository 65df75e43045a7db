"""Access Provider interface: the identity, community and messaging platform.

The orchestrator and sweeper only talk to this surface. Implementations
translate platform errors into the `ProviderError` family below, so callers
never see platform exception types.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from deliverybot.core.models import NotificationPayload


# ==================== Value types ====================


@dataclass(frozen=True)
class UserRef:
    id: str
    name: str


@dataclass(frozen=True)
class SpaceRef:
    id: str
    name: str


@dataclass(frozen=True)
class MemberRef:
    user_id: str
    space_id: str
    role_ids: frozenset[str] = frozenset()


@dataclass(frozen=True)
class RoleRef:
    id: str
    name: str


@dataclass(frozen=True)
class ChannelRef:
    id: str
    name: str
    is_text: bool
    can_create_invite: bool


@dataclass(frozen=True)
class InviteRef:
    url: str
    channel_id: str
    max_age: int
    max_uses: int


@dataclass(frozen=True)
class ProviderFault:
    """An asynchronous provider-level fault (gateway error, disconnect...)."""

    source: str
    message: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ==================== Errors ====================


class ProviderError(Exception):
    """Base exception for provider errors."""


class UnknownEntityError(ProviderError):
    """The provider reports the entity does not exist."""

    def __init__(self, entity: str, entity_id: str, detail: str = "") -> None:
        super().__init__(f"Unknown {entity} {entity_id}" + (f": {detail}" if detail else ""))
        self.entity = entity
        self.entity_id = entity_id


class MessagingDisabledError(ProviderError):
    """The recipient does not accept private messages from this sender."""


class ProviderUnavailableError(ProviderError):
    """Transient failure: network, timeout, platform outage."""


# ==================== Interface ====================


class AccessProvider(ABC):
    """Abstract identity/community/messaging platform.

    A provider is constructed once per process, started explicitly, and
    injected into whatever needs it.
    """

    def __init__(self) -> None:
        self.faults: asyncio.Queue[ProviderFault] = asyncio.Queue()

    # ==================== Lifecycle ====================

    @abstractmethod
    async def start(self) -> None:
        """Log in and wait until ready.

        Raises on failure; returning means requests can be served.
        """

    @abstractmethod
    async def stop(self) -> None:
        """Close the session."""

    @property
    @abstractmethod
    def is_ready(self) -> bool: ...

    @property
    @abstractmethod
    def identity(self) -> str | None:
        """Display tag of the logged-in sender account, None before ready."""

    def report_fault(self, source: str, message: str) -> None:
        self.faults.put_nowait(ProviderFault(source=source, message=message))

    # ==================== Lookups ====================

    @abstractmethod
    async def fetch_user(self, user_id: str) -> UserRef:
        """Raises UnknownEntityError if the user does not exist."""

    @abstractmethod
    async def fetch_space(self, space_id: str) -> SpaceRef: ...

    @abstractmethod
    async def fetch_member(self, space: SpaceRef, user_id: str) -> MemberRef:
        """Raises UnknownEntityError if the user is not a member of the space."""

    @abstractmethod
    async def fetch_role(self, space: SpaceRef, role_id: str) -> RoleRef | None:
        """Return None when the role does not exist in the space."""

    @abstractmethod
    async def list_channels(self, space: SpaceRef) -> list[ChannelRef]:
        """Channels of the space in platform order."""

    # ==================== Mutations ====================

    @abstractmethod
    async def add_role(self, member: MemberRef, role: RoleRef, *, reason: str | None = None) -> None: ...

    @abstractmethod
    async def remove_role(self, member: MemberRef, role: RoleRef, *, reason: str | None = None) -> None: ...

    @abstractmethod
    async def create_invite(
        self,
        space: SpaceRef,
        channel_id: str,
        *,
        max_age: int,
        max_uses: int,
        unique: bool,
        reason: str | None = None,
    ) -> InviteRef: ...

    @abstractmethod
    async def send_private_message(self, user_id: str, payload: "NotificationPayload") -> str:
        """Send a private message and return its id.

        Raises:
            MessagingDisabledError: recipient blocks private messages
            UnknownEntityError: recipient no longer exists
        """
