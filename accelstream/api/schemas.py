"""Pydantic schemas for API requests"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from accelstream.streaming.proxy import ProxyConfig
from accelstream.streaming.quality import QualityTier


class ProxyConfigRequest(BaseModel):
    """Proxy settings as sent by the settings UI."""

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    scheme: Literal["http", "https", "socks5"] = Field(default="http", alias="type")
    host: str = ""
    port: int = 8080
    username: Optional[str] = None
    password: Optional[str] = None

    def to_proxy_config(self) -> ProxyConfig:
        return ProxyConfig(
            enabled=self.enabled,
            scheme=self.scheme,
            host=self.host.strip(),
            port=self.port,
            username=self.username or None,
            password=self.password,
        )


class ProxyTestRequest(BaseModel):
    """Body of the proxy test endpoint."""

    config: ProxyConfigRequest


class StreamRequest(BaseModel):
    """Start playing a channel."""

    channel_id: str = Field(min_length=1)
    url: str = Field(min_length=1)
    name: str = ""
    quality: str = "auto"
    replace: bool = True
    hwaccel: bool = True

    @field_validator("quality")
    @classmethod
    def validate_quality(cls, v: str) -> str:
        return QualityTier.parse(v).value
