"""
EVREG Configuration

Four sections of typed settings:

    identifiers     domain_id, hash_algorithm
    registry        variant
    events          journal_enabled
    observability   log_level, log_format

Each setting resolves, highest precedence first, from its EVREG_* environment
variable, then a runtime override (`ConfigManager.set` or a YAML file loaded
with `load_from_file`), then its default. Values from every source go through
the same parsing and checks, so a bad environment variable surfaces as
ConfigValidationError rather than failing later inside a component.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar, Union

import yaml

T = TypeVar("T")

VARIANTS = ("side-channel", "chained")
HASH_ALGORITHM_NAMES = ("sha256", "sha3_256", "blake2b")
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """A configuration value failed parsing or its checks."""
    pass


def _parse_bool(raw: str) -> bool:
    token = raw.strip().lower()
    if token in _TRUE:
        return True
    if token in _FALSE:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


@dataclass
class Setting(Generic[T]):
    """
    One typed configuration value.

    Strings are parsed into the default's type; the result must be of that
    type, non-empty when a string, and one of `choices` when given.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    choices: Optional[Tuple[T, ...]] = None
    _override: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self.parse(os.environ[self.env_var], source=self.env_var)
        return self.default if self._override is None else self._override

    def set(self, value: Any) -> None:
        self._override = self.parse(value)

    def clear(self) -> None:
        self._override = None

    def parse(self, value: Any, source: str = "value") -> T:
        kind = type(self.default)
        if isinstance(value, str) and kind is bool:
            try:
                value = _parse_bool(value)
            except ValueError as exc:
                raise ConfigValidationError(f"Invalid {source}: {exc}") from None
        if not isinstance(value, kind):
            raise ConfigValidationError(
                f"Invalid {source}: expected {kind.__name__}, got {value!r}"
            )
        if kind is str and not value:
            raise ConfigValidationError(f"Invalid {source}: must not be empty")
        if self.choices is not None and value not in self.choices:
            raise ConfigValidationError(
                f"Invalid {source}: {value!r} is not one of {', '.join(map(str, self.choices))}"
            )
        return value


def _setting(default: Any, env_var: str, description: str, choices: Optional[Tuple] = None) -> Any:
    return field(default_factory=lambda: Setting(default, env_var, description, choices))


@dataclass
class IdentifierConfig:
    """Identifier derivation."""
    domain_id: Setting[str] = _setting(
        "evreg:evidence:v1", "EVREG_DOMAIN_ID",
        "Domain-separation constant prefixed to main-mode derivations",
    )
    hash_algorithm: Setting[str] = _setting(
        "sha256", "EVREG_HASH_ALGORITHM",
        "Hash used for identifier derivation", HASH_ALGORITHM_NAMES,
    )


@dataclass
class StoreConfig:
    """Which protocol variant the stores implement."""
    variant: Setting[str] = _setting(
        "side-channel", "EVREG_VARIANT", "Registry variant", VARIANTS,
    )


@dataclass
class EventsConfig:
    journal_enabled: Setting[bool] = _setting(
        True, "EVREG_EVENTS_JOURNAL", "Keep an append-only journal of published events",
    )


@dataclass
class ObservabilityConfig:
    log_level: Setting[str] = _setting("info", "EVREG_LOG_LEVEL", "Log level", LOG_LEVELS)
    log_format: Setting[str] = _setting("json", "EVREG_LOG_FORMAT", "Log format", ("json", "text"))


def _walk(node: Any, prefix: str = "") -> Iterator[Tuple[str, Setting]]:
    """Yield (dotted path, setting) for every setting below `node`."""
    for f in fields(node):
        child = getattr(node, f.name)
        path = f"{prefix}{f.name}"
        if isinstance(child, Setting):
            yield path, child
        elif is_dataclass(child):
            yield from _walk(child, f"{path}.")


@dataclass
class RegistryConfig:
    """Root of the configuration tree."""
    identifiers: IdentifierConfig = field(default_factory=IdentifierConfig)
    registry: StoreConfig = field(default_factory=StoreConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def settings(self) -> Iterator[Tuple[str, Setting]]:
        return _walk(self)

    def to_dict(self) -> Dict[str, Any]:
        """Effective values, nested by section."""
        out: Dict[str, Dict[str, Any]] = {}
        for path, setting in self.settings():
            section, key = path.split(".", 1)
            out.setdefault(section, {})[key] = setting.get()
        return out

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=True)


class ConfigManager:
    """
    Process-wide owner of the configuration tree.

    Thread-safe singleton; `reset` swaps in a fresh tree of defaults.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                instance = super().__new__(cls)
                instance._config = RegistryConfig()
                instance._sources = []
                cls._instance = instance
            return cls._instance

    @property
    def config(self) -> RegistryConfig:
        return self._config

    @property
    def sources(self) -> List[Path]:
        """Files applied by `load_from_file`, in load order."""
        return list(self._sources)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """
        Apply a YAML file of `section: {key: value}` mappings.

        The whole file is checked before any value is applied.

        Raises:
            ConfigError: missing or unparsable file, unknown section or key,
                or a section that is not a mapping
            ConfigValidationError: a value fails its checks
        """
        path = Path(path)
        if not path.is_file():
            raise ConfigError(f"Configuration file not found: {path}")
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ConfigError(f"Configuration file is not valid YAML: {path}: {exc}") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")

        pending: List[Tuple[Setting, Any]] = []
        for section, values in data.items():
            if not isinstance(values, dict):
                raise ConfigError(f"{path}: section {section!r} must be a mapping, got {values!r}")
            for key, value in values.items():
                setting = self._setting(f"{section}.{key}")
                pending.append((setting, setting.parse(value, source=f"{section}.{key}")))

        for setting, value in pending:
            setting.set(value)
        self._sources.append(path)

    def _setting(self, path: str) -> Setting:
        node = self._resolve(path)
        if not isinstance(node, Setting):
            raise ConfigError(f"Unknown config key: {path}")
        return node

    def _resolve(self, path: str) -> Any:
        node: Any = self._config
        for part in path.split("."):
            if isinstance(node, Setting) or part not in {f.name for f in fields(node)}:
                raise ConfigError(f"Unknown config key: {path}")
            node = getattr(node, part)
        return node

    def get(self, path: str) -> Any:
        """Effective value at a dotted path; a section path yields a dict."""
        node = self._resolve(path)
        if isinstance(node, Setting):
            return node.get()
        return {key: setting.get() for key, setting in _walk(node)}

    def set(self, path: str, value: Any) -> None:
        """Runtime override, e.g. `set("registry.variant", "chained")`."""
        self._setting(path).set(value)

    def reset(self) -> None:
        self._config = RegistryConfig()
        self._sources = []

    def validate(self) -> List[str]:
        """Check every effective value; returns one message per failure."""
        errors = []
        for path, setting in self._config.settings():
            try:
                setting.get()
            except ConfigValidationError as exc:
                errors.append(f"{path}: {exc}")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Describe every setting, for documentation and `evreg config schema`."""
        properties: Dict[str, Dict[str, Any]] = {}
        for path, setting in self._config.settings():
            section, key = path.split(".", 1)
            entry: Dict[str, Any] = {
                "type": type(setting.default).__name__,
                "default": setting.default,
                "description": setting.description,
                "env_var": setting.env_var,
            }
            if setting.choices is not None:
                entry["choices"] = list(setting.choices)
            properties.setdefault(section, {})[key] = entry
        return {"properties": properties}


def get_config() -> RegistryConfig:
    """Current process-wide configuration tree."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
