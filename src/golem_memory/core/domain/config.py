"""
Configuration Schema

Pydantic models for the memory layer's settings. Values come from an
optional YAML file and are then overridden by ``GOLEM_*`` environment
variables.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from golem_memory.core.domain.errors import LedgerConfigurationError

DEFAULT_RPC_URL = "https://kaolin.holesky.golemdb.io/rpc"
DEFAULT_CHAIN_ID = 60138453025
DEFAULT_EXPLORER_URL = "https://explorer.ethwarsaw.holesky.golemdb.io"

_PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


class LedgerSettings(BaseModel):
    """Connection to the Golem Base JSON-RPC endpoint."""

    model_config = ConfigDict(extra="forbid")

    rpc_url: str = Field(DEFAULT_RPC_URL, description="JSON-RPC endpoint")
    chain_id: int = Field(DEFAULT_CHAIN_ID, gt=0)
    explorer_url: str = Field(DEFAULT_EXPLORER_URL, description="Block explorer base URL")
    private_key: Optional[SecretStr] = Field(None, description="Signing key for writes")
    owner_address: Optional[str] = Field(
        None, description="Account whose entities are listed; derived from the key if unset"
    )
    request_timeout: float = Field(30.0, gt=0, description="Seconds per remote call")
    receipt_timeout: float = Field(60.0, gt=0, description="Seconds to wait for a receipt")
    receipt_poll_interval: float = Field(1.0, gt=0)

    @field_validator("rpc_url", "explorer_url")
    @classmethod
    def validate_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("must be an http(s) URL")
        return value.rstrip("/")


class StorageSettings(BaseModel):
    """Ledger write policy and local handle cache."""

    model_config = ConfigDict(extra="forbid")

    entity_btl: int = Field(1000, gt=0, description="Entity lifetime in blocks")
    max_content_bytes: int = Field(10_000, ge=512)
    max_transaction_bytes: int = Field(200_000, gt=0)
    connect_attempts: int = Field(2, ge=1)
    connect_base_delay: float = Field(1.0, ge=0)
    read_concurrency: int = Field(8, ge=1)
    stats_sample_size: int = Field(50, ge=1)
    stamp_transaction_hash: bool = False
    handle_cache_path: Path = Field(
        Path(".golem_memory/handles.json"), description="Local entity handle cache"
    )


class CryptoSettings(BaseModel):
    """Key derivation parameters."""

    model_config = ConfigDict(extra="forbid")

    key_derivation: str = Field("pbkdf2-sha256", pattern="^(pbkdf2-sha256|double-sha256)$")
    kdf_iterations: int = Field(100_000, ge=1)
    max_fallback_keys: int = Field(25, ge=0)


class ServiceSettings(BaseModel):
    """Memory service behaviour."""

    model_config = ConfigDict(extra="forbid")

    owner_id: str = Field("ethereum-wallet", min_length=1)
    request_delay: float = Field(3.0, ge=0, description="Minimum seconds between ledger requests")
    prune_superseded: bool = True
    enforce_permissions: bool = True


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: str = Field("INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    @field_validator("level", mode="before")
    @classmethod
    def upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class MemoryLayerSettings(BaseModel):
    """Top-level settings for the memory layer."""

    model_config = ConfigDict(extra="forbid")

    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    crypto: CryptoSettings = Field(default_factory=CryptoSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


_ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "GOLEM_RPC_URL": ("ledger", "rpc_url"),
    "GOLEM_CHAIN_ID": ("ledger", "chain_id"),
    "GOLEM_PRIVATE_KEY": ("ledger", "private_key"),
    "GOLEM_ADDRESS": ("ledger", "owner_address"),
    "GOLEM_EXPLORER_URL": ("ledger", "explorer_url"),
    "GOLEM_MEMORY_OWNER": ("service", "owner_id"),
    "GOLEM_MEMORY_CACHE": ("storage", "handle_cache_path"),
    "GOLEM_MEMORY_LOG_LEVEL": ("logging", "level"),
}


def validate_private_key(value: str) -> str:
    """Return the key with a ``0x`` prefix or raise for malformed keys."""
    if not _PRIVATE_KEY_RE.match(value):
        raise LedgerConfigurationError("Private key must be 64 hex characters")
    normalized = value[2:] if value.startswith("0x") else value
    if set(normalized) == {"0"}:
        raise LedgerConfigurationError("Private key must not be all zeros")
    return "0x" + normalized.lower()


def load_settings(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
) -> MemoryLayerSettings:
    """Load settings from YAML (optional) and apply environment overrides.

    Raises:
        LedgerConfigurationError: If the file cannot be parsed or a value is invalid.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise LedgerConfigurationError(
                f"Config file not found: {config_path}", details={"path": str(config_path)}
            )
        try:
            with open(config_path, encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise LedgerConfigurationError(
                f"Invalid YAML in {config_path}", details={"error": str(exc)}
            ) from exc
        if not isinstance(raw, dict):
            raise LedgerConfigurationError(f"Config root must be a mapping: {config_path}")
        # an empty section means "use the defaults"
        raw = {section: value for section, value in raw.items() if value is not None}
        for section, value in raw.items():
            if not isinstance(value, dict):
                raise LedgerConfigurationError(
                    f"Config section must be a mapping: {section}",
                    details={"path": str(config_path), "section": section},
                )

    environ = os.environ if env is None else env
    for variable, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            section_data = raw.get(section) or {}
            section_data[key] = value
            raw[section] = section_data

    try:
        return MemoryLayerSettings.model_validate(raw)
    except ValidationError as exc:
        raise LedgerConfigurationError(
            "Invalid memory layer configuration",
            details={"errors": exc.errors(include_url=False)},
        ) from exc
