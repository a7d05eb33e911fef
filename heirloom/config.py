"""
Heirloom — Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides, HEIRLOOM_ prefix, ``__`` nesting)
3. Legacy deployment variables (PRIVADO_*, HASURA_*, CHAIN_*)

Presence of required settings is checked where they are used, not here:
a permissive-mode deployment never needs verifier or chain settings.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ─── Sub-configs ──────────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3001
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    # Mount point for /start and /verify. /health is always at the root.
    route_prefix: str = ""


class PrivadoConfig(BaseModel):
    dev_mode: bool = False
    request_ttl_seconds: float = 600.0
    verifier_did: str = ""
    callback_url: str = ""
    request_reason: str = "Heirloom verification"
    request_scope: list[dict[str, Any]] = Field(default_factory=list)
    circuits_dir: str = str(Path.cwd() / "circuits")
    ipfs_gateway_url: str = "https://ipfs.io"
    resolver_prefix: str = "polygon:amoy"
    rpc_url: str = ""
    state_contract_address: str = "0x1a4cC30f2aA0377b0c3bc9848766D90cb4404124"
    accepted_delay_ms: int = 5 * 60 * 1000
    # Verification capability (iden3 auth) endpoint
    verifier_service_url: str = "http://localhost:8090"
    verifier_timeout_s: float = 30.0

    @field_validator("request_scope", mode="before")
    @classmethod
    def _normalise_scope(cls, value: Any) -> Any:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError("Invalid request scope JSON") from exc
        if isinstance(value, dict):
            return [value]
        return value


class RegistryConfig(BaseModel):
    graphql_endpoint: str = ""
    admin_secret: str = ""
    timeout_s: float = 10.0

    @model_validator(mode="after")
    def _strip_secret(self) -> RegistryConfig:
        # Secret managers can inject trailing \r\n into env vars
        if self.admin_secret:
            object.__setattr__(self, "admin_secret", self.admin_secret.strip())
        return self


class LedgerConfig(BaseModel):
    disabled: bool = False
    rpc_url: str = ""
    private_key: str = ""
    contract_address: str = ""
    contract_abi: list[dict[str, Any]] | None = None
    confirmation_timeout_s: float = 120.0

    @field_validator("contract_abi", mode="before")
    @classmethod
    def _parse_abi(cls, value: Any) -> Any:
        if value == "":
            return None
        if isinstance(value, str):
            return json.loads(value)
        return value

    @model_validator(mode="after")
    def _strip_key(self) -> LedgerConfig:
        if self.private_key:
            object.__setattr__(self, "private_key", self.private_key.strip())
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Root Configuration ──────────────────────────────────────────


class HeirloomConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="HEIRLOOM_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    privado: PrivadoConfig = Field(default_factory=PrivadoConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _flag(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes")


# (env var, section, key, converter)
_LEGACY_ENV: list[tuple[str, str, str, Any]] = [
    ("PRIVADO_DEV_MODE", "privado", "dev_mode", _flag),
    ("PRIVADO_REQUEST_TTL_MS", "privado", "request_ttl_seconds", lambda v: float(v) / 1000.0),
    ("PRIVADO_VERIFIER_DID", "privado", "verifier_did", str),
    ("PRIVADO_CALLBACK_URL", "privado", "callback_url", str),
    ("PRIVADO_REQUEST_REASON", "privado", "request_reason", str),
    ("PRIVADO_REQUEST_SCOPE_JSON", "privado", "request_scope", str),
    ("PRIVADO_CIRCUITS_DIR", "privado", "circuits_dir", str),
    ("PRIVADO_IPFS_GATEWAY_URL", "privado", "ipfs_gateway_url", str),
    ("PRIVADO_RESOLVER_PREFIX", "privado", "resolver_prefix", str),
    ("PRIVADO_RPC_URL", "privado", "rpc_url", str),
    ("PRIVADO_STATE_CONTRACT_ADDRESS", "privado", "state_contract_address", str),
    ("PRIVADO_ACCEPTED_DELAY_MS", "privado", "accepted_delay_ms", int),
    ("HASURA_GRAPHQL_ENDPOINT", "registry", "graphql_endpoint", str),
    ("HASURA_GRAPHQL_ADMIN_SECRET", "registry", "admin_secret", str),
    ("CHAIN_VERIFY_DISABLED", "ledger", "disabled", _flag),
    ("CHAIN_RPC_URL", "ledger", "rpc_url", str),
    ("CHAIN_PRIVATE_KEY", "ledger", "private_key", str),
    ("CHAIN_CONTRACT_ADDRESS", "ledger", "contract_address", str),
    ("CHAIN_CONTRACT_ABI", "ledger", "contract_abi", str),
    ("HOST", "server", "host", str),
    ("PORT", "server", "port", int),
]


def load_config(config_path: str | Path | None = None) -> HeirloomConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.

    HEIRLOOM_* variables are applied by pydantic-settings and win over both the
    YAML file and the legacy variable names.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    legacy: dict[str, Any] = {}
    for env_name, section, key, convert in _LEGACY_ENV:
        value = os.environ.get(env_name)
        if value is None or value == "":
            continue
        legacy.setdefault(section, {})[key] = convert(value)
    raw = _deep_merge(raw, legacy)

    # Init kwargs outrank env in pydantic-settings; drop the ones the
    # HEIRLOOM_ environment sets so the documented precedence holds.
    for section in list(raw):
        if not isinstance(raw[section], dict):
            continue
        for key in list(raw[section]):
            if f"HEIRLOOM_{section}__{key}".upper() in os.environ:
                del raw[section][key]

    return HeirloomConfig(**raw)
