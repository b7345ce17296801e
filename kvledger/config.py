# kvledger/config.py
"""
Environment-driven settings.

Layering (lowest → highest):

    defaults
    config/main.toml
    config/{KV_SERVER_ENV}.toml     (KV_SERVER_ENV defaults to "development")
    .env
    process environment

Both TOML files are optional. Every variable is prefixed `KV_`; nested
sections use `__`, e.g.

    KV_STORAGE_URI=sqlite:///var/lib/kvledger/kv.db
    KV_CHALLENGE_TTL_SECONDS=300
    KV_SIGNATURE__CURVE=secp256k1
    KV_SIGNATURE__HASH=sha256
"""

import os
from pathlib import Path
from typing import Literal, Optional, Tuple, Type

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from kvledger.crypto.keys import CURVES, DEFAULT_CURVE, DEFAULT_HASH, HASHES

DEFAULT_STORAGE_URI = "sqlite://~/.kvledger/kv.db"
CONFIG_DIR = Path("config")
DEFAULT_SERVER_ENV = "development"


def server_env() -> str:
    return os.environ.get("KV_SERVER_ENV") or DEFAULT_SERVER_ENV


class SignatureSettings(BaseModel):
    """Deployment-pinned signature scheme. Changing it invalidates every stored chain."""
    curve: str = DEFAULT_CURVE
    hash: str = DEFAULT_HASH

    @field_validator("curve")
    @classmethod
    def known_curve(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in CURVES:
            raise ValueError(f"curve must be one of {sorted(CURVES)}")
        return v

    @field_validator("hash")
    @classmethod
    def known_hash(cls, v: str) -> str:
        v = (v or "").strip().lower().replace("-", "_")
        if v not in HASHES:
            raise ValueError(f"hash must be one of {sorted(HASHES)}")
        return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KV_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    storage_uri: str = DEFAULT_STORAGE_URI
    challenge_ttl_seconds: int = 300
    signature: SignatureSettings = SignatureSettings()

    # static: only bindings listed in proofs_file (plus nextid) may hold content
    # open: the caller has already checked proofs
    proofs_mode: Literal["static", "open"] = "open"
    proofs_file: Optional[Path] = None

    log_level: str = "INFO"
    log_json: bool = False

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # first source wins; missing TOML files contribute nothing
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=CONFIG_DIR / f"{server_env()}.toml"),
            TomlConfigSettingsSource(settings_cls, toml_file=CONFIG_DIR / "main.toml"),
            file_secret_settings,
        )

    @field_validator("storage_uri")
    @classmethod
    def normalize_storage_uri(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("storage_uri cannot be empty")
        if "://" not in v:
            # plain path → SQLite file
            v = f"sqlite://{v}"
        return v

    @field_validator("challenge_ttl_seconds")
    @classmethod
    def positive_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("challenge_ttl_seconds must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        v = (v or "INFO").strip().upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v


def get_settings(**overrides) -> Settings:
    """Fresh settings from the environment; keyword overrides win (CLI flags, tests)."""
    return Settings(**overrides)
