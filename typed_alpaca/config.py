from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from typed_alpaca.backend.errors import BrokerValidationError

DataSourceLiteral = Literal["iex", "sip"]
CredentialKind = Literal["key", "oauth"]


class Settings(BaseSettings):
    APCA_API_KEY_ID: str | None = None
    APCA_API_SECRET_KEY: str | None = None
    APCA_OAUTH_TOKEN: str | None = None
    APCA_PAPER: bool = True
    APCA_DATA_FEED: str = "iex"
    ORDER_CLIENT_PREFIX: str = "typed-alpaca"


    APCA_RATE_LIMIT_PER_MINUTE: int = 200
    APCA_REQUEST_TIMEOUT: float = 30.0


    STREAM_BACKOFF_BASE: float = 1.0
    STREAM_BACKOFF_FACTOR: float = 2.0
    STREAM_BACKOFF_MAX: float = 30.0
    STREAM_BACKOFF_JITTER: float = 0.1


    LOG_LEVEL: str = "INFO"


    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


    @field_validator("APCA_DATA_FEED")
    @classmethod
    def _feed(cls, v: str) -> str:
        allowed = {"iex", "sip"}
        if v.lower() not in allowed:
            raise ValueError("APCA_DATA_FEED must be 'iex' or 'sip'")
        return v.lower()

    @field_validator("STREAM_BACKOFF_JITTER")
    @classmethod
    def _jitter(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("STREAM_BACKOFF_JITTER must be within [0, 1]")
        return v

    def credentials(self) -> "Credentials":
        return Credentials(
            key=self.APCA_API_KEY_ID or None,
            secret=self.APCA_API_SECRET_KEY or None,
            access_token=self.APCA_OAUTH_TOKEN or None,
            paper=self.APCA_PAPER,
        )


@dataclass(frozen=True)
class Credentials:
    """Either a key/secret pair or an OAuth access token, never both."""

    key: Optional[str] = None
    secret: Optional[str] = None
    access_token: Optional[str] = None
    paper: bool = True

    def __post_init__(self) -> None:
        has_pair = bool(self.key) or bool(self.secret)
        if has_pair and self.access_token:
            raise BrokerValidationError("key/secret and OAuth access_token are mutually exclusive")
        if has_pair and not (self.key and self.secret):
            raise BrokerValidationError("both key and secret are required")
        if not has_pair and not self.access_token:
            raise BrokerValidationError("no credentials: set APCA_API_KEY_ID/APCA_API_SECRET_KEY or APCA_OAUTH_TOKEN")

    @property
    def kind(self) -> CredentialKind:
        return "oauth" if self.access_token else "key"

    def auth_headers(self) -> Dict[str, str]:
        if self.kind == "oauth":
            return {"Authorization": f"Bearer {self.access_token}"}
        return {"APCA-API-KEY-ID": self.key or "", "APCA-API-SECRET-KEY": self.secret or ""}

    def masked(self) -> str:
        """Identifier safe for logs."""
        value = self.access_token if self.kind == "oauth" else self.key
        value = value or ""
        return f"{value[:2]}****{value[-4:]}" if len(value) > 6 else "****"

    def __repr__(self) -> str:
        return f"Credentials(kind={self.kind!r}, id={self.masked()!r}, paper={self.paper})"


@dataclass(frozen=True)
class Endpoints:
    paper: bool = True

    @property
    def account(self) -> str:
        return "https://paper-api.alpaca.markets/v2" if self.paper else "https://api.alpaca.markets/v2"

    market_data: str = "https://data.alpaca.markets/v2"
    beta: str = "https://data.alpaca.markets/v1beta1"

    @property
    def account_stream(self) -> str:
        return "wss://paper-api.alpaca.markets/stream" if self.paper else "wss://api.alpaca.markets/stream"

    @staticmethod
    def market_data_stream(source: DataSourceLiteral = "iex") -> str:
        if source not in ("iex", "sip"):
            raise BrokerValidationError(f"unknown data source {source!r}")
        return f"wss://stream.data.alpaca.markets/v2/{source}"


settings = Settings()
