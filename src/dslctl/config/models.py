"""Pydantic configuration models with code-baked defaults.

Sparse TOML contract: defaults live here, ``dslctl.toml`` only holds
overrides. An empty file (or none at all) gives an in-memory store and
the built-in domains.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field

DEFAULT_ALIASES: dict[str, str] = {
    "hedge fund": "hedge-fund-investor",
    "hedge-fund": "hedge-fund-investor",
    "hf": "hedge-fund-investor",
    "investor": "hedge-fund-investor",
    "beneficial ownership": "ubo",
    "ubo discovery": "ubo",
    "know your customer": "kyc",
    "case": "onboarding",
    "fa": "fund-accounting",
    "ta": "transfer-agency",
    "us": "compliance-us",
    "eu": "compliance-eu",
    "uk": "compliance-uk",
    "apac": "compliance-apac",
}


class StoreConfig(BaseModel):
    """[store] section. ``path`` unset means an in-memory database."""

    model_config = {"frozen": True}

    path: Path | None = None


class RegistryConfig(BaseModel):
    """[registry] section."""

    model_config = {"frozen": True}

    health_interval: float = Field(default=30.0, gt=0)


class RouterConfig(BaseModel):
    """[router] section."""

    model_config = {"frozen": True}

    default_domain: str | None = None
    aliases: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_ALIASES))


class OrchestratorConfig(BaseModel):
    """[orchestrator] section."""

    model_config = {"frozen": True}

    max_sessions: int = Field(default=100, ge=1)
    session_timeout: float = Field(default=1800.0, gt=0)
    eviction_interval: float = Field(default=60.0, gt=0)


class EventsConfig(BaseModel):
    """[events] section."""

    model_config = {"frozen": True}

    sync: bool = False
    max_retries: int = Field(default=3, ge=1)
    max_workers: int = Field(default=2, ge=1)


class PluginsConfig(BaseModel):
    """[plugins] section."""

    model_config = {"frozen": True}

    local_dir: Path | None = None
    audit: bool = True
