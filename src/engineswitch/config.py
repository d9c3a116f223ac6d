"""
Migration configuration.

MigrationConfig is immutable; FeatureFlags swaps whole instances when an
operator changes a setting, so a routing decision always sees one
consistent configuration.

Environment variables understood by :func:`config_changes_from_env`:

    MIGRATION_NEW_PIPELINE_PCT      new_engine_percentage (0-100)
    MIGRATION_ENABLE_CANARY         canary_enabled
    MIGRATION_CANARY_SAMPLE_RATE    canary_sample_rate (0-100)
    MIGRATION_CANARY_TIMEOUT        canary_timeout_seconds
    MIGRATION_CIRCUIT_BREAKER       circuit_breaker_enabled
    MIGRATION_ERROR_THRESHOLD       error_threshold
    MIGRATION_ERROR_WINDOW          error_window_seconds
    MIGRATION_RECOVERY_TIMEOUT      circuit_recovery_timeout_seconds
    MIGRATION_FALLBACK_TO_LEGACY    fallback_to_legacy_on_error
    MIGRATION_AUTO_ROLLBACK         auto_rollback_enabled
    MIGRATION_MANUAL_OVERRIDE       manual_override (legacy | new | none)
    MIGRATION_NEW_PIPELINE_TABLES   candidate_routing_keys (comma separated)
    MIGRATION_STICKY_ROUTING        sticky_routing
"""

from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Mapping
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any

from engineswitch.exceptions import ConfigurationError, InvalidPercentageError

ROLLBACK_STATE_PATH_ENV = "MIGRATION_ROLLBACK_STATE_PATH"


class ManualOverride(Enum):
    """
    Operator override of percentage-based routing.

    FORCE_LEGACY always wins. FORCE_NEW never bypasses an open circuit
    breaker; use ``force_execute_system(..., bypass_circuit_breaker=True)``
    for that.
    """

    NONE = "none"
    FORCE_LEGACY = "force_legacy"
    FORCE_NEW = "force_new"

    @classmethod
    def parse(cls, value: ManualOverride | str | None) -> ManualOverride:
        """
        Coerce user input into a ManualOverride.

        Accepts enum members, their values, and the short forms used in
        environment variables ("legacy", "new", "none", "").

        Raises:
            ConfigurationError: If the value is not recognised.
        """
        if value is None:
            return cls.NONE
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        aliases = {
            "": cls.NONE,
            "none": cls.NONE,
            "off": cls.NONE,
            "legacy": cls.FORCE_LEGACY,
            "force_legacy": cls.FORCE_LEGACY,
            "new": cls.FORCE_NEW,
            "candidate": cls.FORCE_NEW,
            "force_new": cls.FORCE_NEW,
        }
        if normalized not in aliases:
            raise ConfigurationError(
                f"manual_override must be one of legacy, new, none; got {value!r}",
                field="manual_override",
                value=value,
            )
        return aliases[normalized]


_BOOLEAN_FIELDS = (
    "canary_enabled",
    "force_canary_mode",
    "circuit_breaker_enabled",
    "fallback_to_legacy_on_error",
    "auto_rollback_enabled",
    "sticky_routing",
    "track_performance_metrics",
)


@dataclass(frozen=True)
class MigrationConfig:
    """
    Settings that govern routing between the legacy and candidate engines.

    Validation happens in ``__post_init__`` so an invalid instance can never
    exist; FeatureFlags relies on that to apply changes all-or-nothing.

    Example:
        >>> config = MigrationConfig(new_engine_percentage=25, canary_enabled=True)
        >>> config.new_engine_percentage
        25
    """

    new_engine_percentage: float = 0
    canary_enabled: bool = False
    canary_sample_rate: float = 10.0
    canary_timeout_seconds: float = 30.0
    force_canary_mode: bool = False
    circuit_breaker_enabled: bool = True
    error_threshold: int = 5
    error_window_seconds: float = 300.0
    circuit_recovery_timeout_seconds: float = 60.0
    half_open_success_threshold: int = 1
    fallback_to_legacy_on_error: bool = True
    auto_rollback_enabled: bool = True
    manual_override: ManualOverride = ManualOverride.NONE
    candidate_routing_keys: frozenset[str] = field(default_factory=frozenset)
    sticky_routing: bool = False
    track_performance_metrics: bool = True
    performance_sample_limit: int = 1000

    def __post_init__(self) -> None:
        """Validate configuration values."""
        for name in _BOOLEAN_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise ConfigurationError(
                    f"{name} must be a boolean, got {value!r}", field=name, value=value
                )

        for name in ("new_engine_percentage", "canary_sample_rate"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InvalidPercentageError(name, value)
            if not 0 <= value <= 100:
                raise InvalidPercentageError(name, value)

        if isinstance(self.error_threshold, bool) or not isinstance(self.error_threshold, int):
            raise ConfigurationError(
                f"error_threshold must be an integer, got {self.error_threshold!r}",
                field="error_threshold",
                value=self.error_threshold,
            )
        if self.error_threshold < 1:
            raise ConfigurationError(
                f"error_threshold must be >= 1, got {self.error_threshold}",
                field="error_threshold",
                value=self.error_threshold,
            )

        if self.half_open_success_threshold < 1:
            raise ConfigurationError(
                "half_open_success_threshold must be >= 1, "
                f"got {self.half_open_success_threshold}",
                field="half_open_success_threshold",
                value=self.half_open_success_threshold,
            )

        if self.canary_timeout_seconds <= 0:
            raise ConfigurationError(
                f"canary_timeout_seconds must be > 0, got {self.canary_timeout_seconds}",
                field="canary_timeout_seconds",
                value=self.canary_timeout_seconds,
            )

        if self.error_window_seconds <= 0:
            raise ConfigurationError(
                f"error_window_seconds must be > 0, got {self.error_window_seconds}",
                field="error_window_seconds",
                value=self.error_window_seconds,
            )

        if self.circuit_recovery_timeout_seconds < 0:
            raise ConfigurationError(
                "circuit_recovery_timeout_seconds must be >= 0, "
                f"got {self.circuit_recovery_timeout_seconds}",
                field="circuit_recovery_timeout_seconds",
                value=self.circuit_recovery_timeout_seconds,
            )

        if self.performance_sample_limit < 1:
            raise ConfigurationError(
                f"performance_sample_limit must be >= 1, got {self.performance_sample_limit}",
                field="performance_sample_limit",
                value=self.performance_sample_limit,
            )

        if not isinstance(self.manual_override, ManualOverride):
            raise ConfigurationError(
                f"manual_override must be a ManualOverride, got {self.manual_override!r}",
                field="manual_override",
                value=self.manual_override,
            )

    def with_changes(self, **changes: Any) -> MigrationConfig:
        """
        Return a copy with ``changes`` applied and validated.

        ``manual_override`` and boolean fields may be given as strings and
        ``candidate_routing_keys`` as any iterable of strings.

        Raises:
            ConfigurationError: On unknown keys or invalid values. The
                receiver is unchanged either way.
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                field=unknown[0],
            )

        if "manual_override" in changes:
            changes["manual_override"] = ManualOverride.parse(changes["manual_override"])
        if "candidate_routing_keys" in changes:
            changes["candidate_routing_keys"] = _as_key_set(changes["candidate_routing_keys"])
        for name in _BOOLEAN_FIELDS:
            if isinstance(changes.get(name), str):
                changes[name] = parse_bool(changes[name], name=name)

        try:
            return replace(self, **changes)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def to_dict(self) -> dict[str, Any]:
        """
        Convert to a JSON-friendly dictionary.

        Used for the config snapshot attached to every enriched result.
        """
        data = asdict(self)
        data["manual_override"] = self.manual_override.value
        data["candidate_routing_keys"] = sorted(self.candidate_routing_keys)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> MigrationConfig:
        """
        Create from a dictionary, ignoring unknown keys.

        Raises:
            ConfigurationError: If a value is invalid.
        """
        known = {f.name for f in fields(cls)}
        return cls().with_changes(**{k: v for k, v in data.items() if k in known})


def _as_key_set(value: Any) -> frozenset[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, Iterable):
        return frozenset(str(item) for item in value)
    raise ConfigurationError(
        f"candidate_routing_keys must be an iterable of strings, got {value!r}",
        field="candidate_routing_keys",
        value=value,
    )


_TRUE_VALUES = frozenset({"1", "true", "yes", "on", "enabled"})
_FALSE_VALUES = frozenset({"0", "false", "no", "off", "disabled", ""})


def parse_bool(value: str, *, name: str = "value") -> bool:
    """
    Parse a boolean environment value.

    Raises:
        ConfigurationError: If the value is not a recognised boolean.
    """
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}", field=name, value=value)


def _number(parser: Callable[[str], Any]) -> Callable[[str, str], Any]:
    def parse(value: str, name: str) -> Any:
        try:
            return parser(value.strip())
        except ValueError as e:
            raise ConfigurationError(
                f"{name} must be numeric, got {value!r}", field=name, value=value
            ) from e

    return parse


def _boolean(value: str, name: str) -> bool:
    return parse_bool(value, name=name)


def _passthrough(value: str, name: str) -> str:
    return value


# env var -> (config field, parser)
ENVIRONMENT_VARIABLES: dict[str, tuple[str, Callable[[str, str], Any]]] = {
    "MIGRATION_NEW_PIPELINE_PCT": ("new_engine_percentage", _number(float)),
    "MIGRATION_ENABLE_CANARY": ("canary_enabled", _boolean),
    "MIGRATION_CANARY_SAMPLE_RATE": ("canary_sample_rate", _number(float)),
    "MIGRATION_CANARY_TIMEOUT": ("canary_timeout_seconds", _number(float)),
    "MIGRATION_CIRCUIT_BREAKER": ("circuit_breaker_enabled", _boolean),
    "MIGRATION_ERROR_THRESHOLD": ("error_threshold", _number(int)),
    "MIGRATION_ERROR_WINDOW": ("error_window_seconds", _number(float)),
    "MIGRATION_RECOVERY_TIMEOUT": ("circuit_recovery_timeout_seconds", _number(float)),
    "MIGRATION_FALLBACK_TO_LEGACY": ("fallback_to_legacy_on_error", _boolean),
    "MIGRATION_AUTO_ROLLBACK": ("auto_rollback_enabled", _boolean),
    "MIGRATION_MANUAL_OVERRIDE": ("manual_override", _passthrough),
    "MIGRATION_NEW_PIPELINE_TABLES": ("candidate_routing_keys", _passthrough),
    "MIGRATION_STICKY_ROUTING": ("sticky_routing", _boolean),
}


def config_changes_from_env(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """
    Read MIGRATION_* variables into a dict of configuration changes.

    Variables that are not set are left out so the caller's current values
    survive. Whole-number percentages come back as ints.

    Args:
        environ: Mapping to read from (defaults to ``os.environ``).

    Returns:
        Changes suitable for ``MigrationConfig.with_changes``.

    Raises:
        ConfigurationError: If a variable cannot be parsed.
    """
    env = os.environ if environ is None else environ
    changes: dict[str, Any] = {}
    for variable, (field_name, parser) in ENVIRONMENT_VARIABLES.items():
        raw = env.get(variable)
        if raw is None:
            continue
        value = parser(raw, variable)
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        changes[field_name] = value
    return changes
