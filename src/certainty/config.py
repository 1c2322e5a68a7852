"""
Configuration — CERTAINTY_* environment variables, then .env, then defaults.

Everything is validated once at startup by pydantic-settings; a bad value
stops the process before any bundle is touched.

Nested settings use "__": CERTAINTY_REMOTE__URL maps to remote.url,
CERTAINTY_CHRONICLE__PUBLIC_KEY to chronicle.public_key, and so on.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from certainty.domain.models import (
    CHRONICLE_PUBKEY,
    CHRONICLE_URL,
    DEFAULT_TRUST_ANCHORS,
    DEFAULT_TRUST_CHANNEL,
    TrustAnchors,
)
from certainty.sync import DEFAULT_CACHE_TTL_SECONDS, DEFAULT_URL

_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class RemoteSettings(BaseModel):
    """Remote source of the catalog and bundle files."""

    url: str = Field(default=DEFAULT_URL, description="Directory URL serving ca-certs.json")
    cache_ttl_seconds: int = Field(default=DEFAULT_CACHE_TTL_SECONDS, ge=0)
    connect_timeout_seconds: float = Field(default=5, gt=0)

    @field_validator("url")
    @classmethod
    def require_https(cls, value: str) -> str:
        """The catalog must come over TLS."""
        if not value.startswith("https://"):
            raise ValueError(f"Remote URL must use https://, got {value!r}")
        return value if value.endswith("/") else value + "/"


class ChronicleSettings(BaseModel):
    """
    Transparency log endpoint.

    Leave both fields empty to opt out of the Chronicle check; setting only
    one of them is rejected.
    """

    url: str | None = Field(default=CHRONICLE_URL)
    public_key: str | None = Field(default=CHRONICLE_PUBKEY)

    @model_validator(mode="after")
    def both_or_neither(self) -> ChronicleSettings:
        if bool(self.url) != bool(self.public_key):
            raise ValueError("Set both CHRONICLE__URL and CHRONICLE__PUBLIC_KEY, or neither")
        return self


class CheckSettings(BaseModel):
    """Which checks get_latest_bundle() enforces by default."""

    signature: bool = True
    chronicle: bool | None = Field(
        default=None,
        description="True: always, False: never, unset: conditional (first sighting only)",
    )


class SchedulerSettings(BaseModel):
    """
    Periodic refresh using a standard 5-field cron expression.

    Format: minute hour day-of-month month day-of-week
    """

    enabled: bool = False
    cron: str = Field(default="0 */6 * * *")
    run_on_startup: bool = True

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, value: str) -> str:
        fields = value.split()
        if len(fields) != 5:
            raise ValueError(f"Expected a 5-field crontab expression, got {value!r}")
        return value.strip()


class AppSettings(BaseSettings):
    """
    Root application settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_prefix="CERTAINTY_",
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    data_dir: Path
    trust_channel: str = Field(default=DEFAULT_TRUST_CHANNEL, min_length=1)
    remote: RemoteSettings = Field(default_factory=RemoteSettings)
    chronicle: ChronicleSettings = Field(default_factory=ChronicleSettings)
    checks: CheckSettings = Field(default_factory=CheckSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    log_level: str = Field(default="INFO")

    @field_validator("data_dir")
    @classmethod
    def data_dir_exists(cls, value: Path) -> Path:
        if not value.is_dir():
            raise ValueError(f"Could not open data directory ({value}) for reading/writing")
        return value

    def trust_anchors(self) -> TrustAnchors:
        """Production signing keys with the configured Chronicle endpoint."""
        return DEFAULT_TRUST_ANCHORS.with_chronicle(self.chronicle.url or None, self.chronicle.public_key or None)
