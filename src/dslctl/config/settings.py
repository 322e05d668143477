"""Unified settings — init kwargs, env vars, and TOML config in one object.

Priority chain (highest to lowest):
  1. Init kwargs  — values passed by the embedding application
  2. Env vars     — ``DSLCTL_*`` prefix, nested with ``__``
                    (``DSLCTL_ORCHESTRATOR__MAX_SESSIONS=5``)
  3. TOML file    — ``dslctl.toml`` discovered via walk-up or DSLCTL_CONFIG
  4. Code defaults — baked into the section models

Uses Pydantic Settings v2 with a custom :class:`TomlSettingsSource` that
reuses the walk-up discovery from :mod:`dslctl.config.discovery`.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

from dslctl.config.discovery import find_config, read_toml
from dslctl.config.models import (
    EventsConfig,
    OrchestratorConfig,
    PluginsConfig,
    RegistryConfig,
    RouterConfig,
    StoreConfig,
)


class TomlSettingsSource(PydanticBaseSettingsSource):
    """Read settings from a ``dslctl.toml`` file."""

    def __init__(self, settings_cls: type[BaseSettings], toml_path: Path | None) -> None:
        super().__init__(settings_cls)
        self._data: dict[str, Any] = {}
        if toml_path and toml_path.is_file():
            self._data = read_toml(toml_path)

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        """Return ``(value, field_name, value_is_complex)``."""
        val = self._data.get(field_name)
        return val, field_name, field_name in self._data

    def __call__(self) -> dict[str, Any]:
        return self._data


# Thread-local storage for the TOML path during construction.
_tls = threading.local()


class DslSettings(BaseSettings):
    """Settings for a dslctl runtime, frozen after construction.

    Attributes:
        config_path: The TOML file that was read, if any.
        verbose: DEBUG logging and telemetry spans.
        log_json: JSON log lines instead of the console renderer.
    """

    model_config = {
        "frozen": True,
        "env_prefix": "DSLCTL_",
        "env_nested_delimiter": "__",
    }

    config_path: Path | None = None
    verbose: bool = False
    log_json: bool = False

    store: StoreConfig = Field(default_factory=StoreConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    events: EventsConfig = Field(default_factory=EventsConfig)
    plugins: PluginsConfig = Field(default_factory=PluginsConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Insert the TOML source between env vars and defaults."""
        toml_path = getattr(_tls, "toml_path", None)
        return (
            init_settings,
            env_settings,
            TomlSettingsSource(settings_cls, toml_path),
        )

    @classmethod
    def load(
        cls,
        *,
        config_path: str | Path | None = None,
        start: Path | None = None,
        **overrides: Any,
    ) -> DslSettings:
        """Discover ``dslctl.toml`` (or read *config_path*) and merge *overrides*.

        A relative ``[store] path`` is resolved against the config file's
        directory.

        Raises:
            ConfigError: The TOML file does not parse.
        """
        toml_path: Path | None = None
        if config_path:
            p = Path(config_path)
            if p.is_file():
                toml_path = p
        else:
            toml_path = find_config(start)

        _tls.toml_path = toml_path
        try:
            settings = cls(config_path=toml_path, **overrides)
        finally:
            _tls.toml_path = None

        db_path = settings.store.path
        if toml_path is not None and db_path is not None and not db_path.is_absolute():
            store = settings.store.model_copy(update={"path": toml_path.parent / db_path})
            settings = settings.model_copy(update={"store": store})
        return settings
