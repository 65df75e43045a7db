"""API request/response models for the delivery HTTP surface."""

from typing import Literal

from pydantic import BaseModel, ConfigDict


class DeliverRequest(BaseModel):  # type: ignore[explicit-any]
    """Inbound purchase webhook body.

    Every field is optional here; required-field checks happen in the
    delivery workflow so that a missing field is a structured 400.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", coerce_numbers_to_str=True)

    discord_id: str | None = None
    discord_username: str | None = None
    license_key: str | None = None
    download_url: str | None = None
    plan_type: str | None = None
    email: str | None = None


class DeliverResponseDTO(BaseModel):  # type: ignore[explicit-any]
    """Successful delivery."""

    model_config = ConfigDict(frozen=True)

    success: Literal[True] = True
    message: str
    path: Literal["member_grant", "invite", "credentials_only"]
    in_server: bool
    role_assigned: bool
    invite_created: bool


class DeliverErrorDTO(BaseModel):  # type: ignore[explicit-any]
    """Failed delivery. `error` is the machine-readable kind."""

    model_config = ConfigDict(frozen=True)

    success: Literal[False] = False
    error: str
    message: str
    retryable: bool = False
    role_assigned: bool = False
    invite_created: bool = False


class HealthDTO(BaseModel):  # type: ignore[explicit-any]
    model_config = ConfigDict(frozen=True)

    status: Literal["online", "starting"]
    bot: str
    uptime: float
