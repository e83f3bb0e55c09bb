"""Bridge data model."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

TunnelRegion = Literal["us", "eu", "au", "ap", "sa", "jp", "in"]
TUNNEL_REGIONS: tuple[str, ...] = ("us", "eu", "au", "ap", "sa", "jp", "in")


class BridgeConfiguration(BaseModel):
    """Immutable configuration snapshot; replaced wholesale on reload."""

    model_config = ConfigDict(frozen=True)

    provider_url: str = "http://localhost:1234"
    auto_start: bool = False
    show_status_bar: bool = True
    tunnel_auth_token: str = ""
    tunnel_domain: str = ""
    tunnel_region: TunnelRegion = "us"

    @property
    def provider_base_url(self) -> str:
        return self.provider_url.rstrip("/")


DEFAULT_CONFIGURATION = BridgeConfiguration()


class TunnelStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_running: bool = False
    is_starting: bool = False
    url: str | None = None
    error: str | None = None


class ModelInfo(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str
    object_type: str = Field(default="model", alias="object")
    created_at: int = Field(default=0, alias="created")
    owned_by: str = ""


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    model: str
    messages: list[ChatMessage] = Field(default_factory=list)
    temperature: float | None = None
    stream: bool | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None


class ChunkDelta(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: str | None = None
    role: str | None = None


class ChunkChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    delta: ChunkDelta = Field(default_factory=ChunkDelta)
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    object_type: str = Field(default="chat.completion.chunk", alias="object")
    created_at: int = Field(default=0, alias="created")
    model: str = ""
    choices: list[ChunkChoice] = Field(default_factory=list)

    @property
    def is_final(self) -> bool:
        return bool(self.choices) and self.choices[0].finish_reason is not None


class TunnelHandle(Protocol):
    """Opaque handle returned by a tunnel provisioner."""

    def url(self) -> str | None: ...

    async def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class TunnelStartResult:
    tunnel: TunnelHandle
    url: str
    proxy_port: int


def tunnel_options(config: BridgeConfiguration, proxy_port: int) -> dict[str, Any]:
    """Provisioning options for a tunnel at the local proxy; blank token/domain are omitted."""
    options: dict[str, Any] = {
        "addr": f"http://localhost:{proxy_port}",
        "region": config.tunnel_region,
    }
    if config.tunnel_auth_token.strip():
        options["authtoken"] = config.tunnel_auth_token
    if config.tunnel_domain.strip():
        options["domain"] = config.tunnel_domain
    return options
