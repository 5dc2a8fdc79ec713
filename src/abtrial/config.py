# src/abtrial/config.py
from __future__ import annotations

import contextvars
import logging
import pickle
import tomllib
from contextlib import contextmanager
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Iterator, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import PydanticBaseSettingsSource


class ConfigError(RuntimeError):
    """Raised when a configuration file is missing or cannot be parsed."""


# ---------------------------------------------------------------------------
# Optional TOML / YAML configuration file
# ---------------------------------------------------------------------------


_DEFAULT_CONFIG_NAMES = ("config.toml", "config.yaml", "config.yml")

_PARSERS: dict[str, Callable[[str], Any]] = {
    ".toml": tomllib.loads,
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
}

_active_config_file: contextvars.ContextVar[Path | None] = contextvars.ContextVar(
    "abtrial_config_file", default=None
)


def _discover_config_file() -> Path | None:
    candidates = (Path.cwd() / name for name in _DEFAULT_CONFIG_NAMES)
    return next((c for c in candidates if c.is_file()), None)


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse a TOML or YAML file into a plain mapping (empty YAML yields ``{}``)."""
    parser = _PARSERS.get(path.suffix.lower())
    if parser is None:
        raise ConfigError(f"{path}: unsupported configuration format, use .toml, .yaml or .yml")
    if not path.is_file():
        raise ConfigError(f"{path}: configuration file does not exist")

    content = parser(path.read_text(encoding="utf-8"))
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f"{path}: top level must be a mapping, got {type(content).__name__}")
    return content


class _FileSource(PydanticBaseSettingsSource):
    """Feeds the active configuration file (if any) into the settings model."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        raise NotImplementedError  # __call__ returns the whole mapping at once

    def __call__(self) -> dict[str, Any]:
        path = _active_config_file.get()
        return {} if path is None else read_config_file(path)


@contextmanager
def _using_config_file(path: Path | None) -> Iterator[None]:
    token = _active_config_file.set(path)
    try:
        yield
    finally:
        _active_config_file.reset(token)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class LoggingSettings(BaseModel):
    level: Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"] = "INFO"
    format: str = "%(asctime)-20s %(name)-40s %(levelname)-8s: %(message)s"


class ZookeeperSettings(BaseModel):
    hosts: str = Field("localhost:2181", description="Ensemble connect string (host:port[,host:port...]).")
    chroot: str | None = Field(default=None, description="Optional chroot path, e.g. /abtrial.")
    default_group: str = Field("abtrial", description="Logical group / namespace all keys live under.")
    session_timeout_s: float = Field(10.0, description="Session timeout negotiated with the ensemble, in seconds.")
    connection_timeout_s: float = Field(5.0, description="How long start() waits for the first connection, in seconds.")
    max_retries: int = Field(5, description="Connection retry attempts before giving up.")
    retry_delay_s: float = Field(1.0, description="Initial back-off between connection retries, in seconds.")
    auth_scheme: str | None = Field(default=None, description="Authentication scheme such as 'digest'.")
    auth_credentials: str | None = Field(default=None, description="Credentials for auth_scheme, e.g. 'user:password'.")
    use_tls: bool = Field(False, description="Connect to the ensemble over TLS.")


class TrialSettings(BaseModel):
    enabled: bool = Field(True, description="Globally enable experiments. When False every visitor gets control.")
    store_override: bool = Field(
        False,
        description="Remember (and count) alternatives forced through an override parameter.",
    )
    max_experiments_per_user: int | None = Field(
        1,
        description="Maximum number of distinct running experiments per visitor (None = unlimited).",
        ge=1,
    )
    start_manually: bool = Field(False, description="New experiments only start after an explicit start().")
    db_failover: bool = Field(False, description="Suppress store errors and fall back to control.")
    db_failover_allow_parameter_override: bool = Field(
        False,
        description="While failing over, still honour the override parameter.",
    )
    ignore_ip_addresses: list[str] = Field(
        default_factory=list,
        description="Visitor IPs excluded from experiments. Entries wrapped in slashes are regexes.",
    )
    robot_regex: str = Field(
        r"(?i)(?:bot\b|crawler|spider|slurp|facebookexternalhit|embedly|curl/|wget/|python-requests|"
        r"pingdom|headlesschrome)|^\W*$",
        description="User agents matching this pattern are treated as robots and excluded.",
    )
    user_expire_seconds: int = Field(
        2_592_000,
        description="Idle time after which a visitor namespace may be purged by maintenance.",
        gt=0,
    )


class AlternativeDefinition(BaseModel):
    name: str
    weight: float = Field(1.0, gt=0)


class ExperimentDefinition(BaseModel):
    """
    Declarative experiment definition.

    Alternatives may be given as bare names or as ``{name, weight}`` tables; the
    first alternative is the control.
    """

    alternatives: list[AlternativeDefinition]
    goals: list[str] = Field(default_factory=list)
    metadata: Optional[dict[str, Any]] = None
    resettable: bool = True
    scores: list[str] = Field(default_factory=list)
    metric: Optional[str] = None

    @field_validator("alternatives", mode="before")
    @classmethod
    def _coerce_alternatives(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [{"name": item} if isinstance(item, str) else item for item in value]

    @model_validator(mode="after")
    def _validate_alternatives(self) -> "ExperimentDefinition":
        if not self.alternatives:
            raise ValueError("At least one alternative is required.")
        names = [a.name for a in self.alternatives]
        if len(names) != len(set(names)):
            raise ValueError("Alternative names must be unique.")
        return self


# ---------------------------------------------------------------------------
# Application settings
# ---------------------------------------------------------------------------


class AppSettings(BaseSettings):
    """
    Settings for the split-testing engine.

    Sources, strongest first: constructor arguments, ``ABTRIAL_*`` environment
    variables (``__`` separates nested sections), ``.env`` / ``.env.local``,
    secret files under ``/run/secrets/abtrial``, the configuration file and
    finally the defaults declared below.
    """

    model_config = SettingsConfigDict(
        env_prefix="ABTRIAL_",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        secrets_dir="/run/secrets/abtrial",
        extra="ignore",
        validate_default=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return init_settings, env_settings, dotenv_settings, file_secret_settings, _FileSource(settings_cls)

    logging: LoggingSettings = LoggingSettings()
    zookeeper: ZookeeperSettings = ZookeeperSettings()
    trials: TrialSettings = TrialSettings()
    experiments: dict[str, ExperimentDefinition] = Field(default_factory=dict)


@lru_cache(maxsize=16)
def _build_settings(config_file: str | None, frozen_overrides: bytes) -> AppSettings:
    with _using_config_file(None if config_file is None else Path(config_file)):
        return AppSettings(**pickle.loads(frozen_overrides))


def get_settings(*, config_file: str | Path | None = None, **overrides: Any) -> AppSettings:
    """
    Return the (memoised) settings for this process.

    Keyword ``overrides`` win over every other source. Without an explicit
    ``config_file`` the working directory is searched for config.toml,
    config.yaml or config.yml; when none exists only the other sources apply.
    """
    path = _discover_config_file() if config_file is None else Path(config_file)
    return _build_settings(None if path is None else str(path), pickle.dumps(overrides))


def clear_settings_cache() -> None:
    _build_settings.cache_clear()


def configure_logging(settings: LoggingSettings) -> None:
    """Install a root handler using the configured level and format."""
    logging.basicConfig(level=settings.level, format=settings.format, force=True)
