"""Runtime settings for the epoch ledger services.

Loaded from the environment (prefix ``EPOCHLEDGER_``, ``__`` between
section and key) and from a ``.env`` file in the working directory:

    EPOCHLEDGER_DATABASE__URL=postgresql+asyncpg://ledger:ledger@db/ledger
    EPOCHLEDGER_NODE__NODE_ID=node-a
    EPOCHLEDGER_API__PORT=8200

Command-line flags in the api and close entrypoints take precedence over both.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from epochledger.ledger.signer import SigningContext


class DatabaseSettings(BaseModel):
    url: str = "sqlite+aiosqlite:///./epochledger.db"
    echo: bool = False
    create_schema: bool = True


class NodeSettings(BaseModel):
    node_id: str = "local"
    scope_id: str = "default"


class ApiSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8200
    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=200, ge=1)

    @field_validator("max_page_size")
    @classmethod
    def _max_covers_default(cls, value: int, info) -> int:
        default = info.data.get("default_page_size", 1)
        if value < default:
            raise ValueError(f"max_page_size {value} < default_page_size {default}")
        return value


class SigningSettings(BaseModel):
    enabled: bool = False
    wallet_name: str = "default"
    wallet_hotkey: str = "default"
    wallet_path: str | None = None
    app_domain: str = "epochledger"
    format_version: str = "v0"

    def context(self) -> SigningContext:
        return SigningContext(app_domain=self.app_domain, format_version=self.format_version)


class LedgerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="EPOCHLEDGER_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    node: NodeSettings = Field(default_factory=NodeSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    signing: SigningSettings = Field(default_factory=SigningSettings)
    weights: dict[str, int] = Field(
        default_factory=lambda: {"pr_merged": 8, "review_submitted": 3, "issue_closed": 2},
        description="Weight table pinned into newly created epochs",
    )
    credits_per_epoch: int = Field(default=10_000, ge=0)


__all__ = [
    "ApiSettings",
    "DatabaseSettings",
    "LedgerSettings",
    "NodeSettings",
    "SigningSettings",
]
