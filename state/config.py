"""
Courtroom Config — Hierarchical Configuration Store

THIS MODULE DEFINES NO COMMANDS.

Responsibilities:
- Define the typed configuration schema and its defaults
- Merge stored overrides onto the defaults (depth-first)
- Resolve and mutate dotted paths ("detection.cooldown_minutes")
- Persist every mutation through a pluggable backend

Backend failures never reach callers: the store logs them and keeps
serving in-memory values. Writes are fire-and-forget.
Single writer; no locking across processes.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import math
import os
import threading
from dataclasses import asdict, dataclass, field, fields
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, MutableMapping, Optional, Set

from court.errors import ConfigBackendError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "courtroom_runtime_config.json"
MEMORY_CONFIG_KEY = "courtroom_config_v1"

_MISSING = object()


def courtroom_home() -> Path:
    raw = os.getenv("COURTROOM_HOME")
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".clawdbot"


def default_config_path() -> Path:
    return courtroom_home() / CONFIG_FILE_NAME


# ---------------------------
# Schema
# ---------------------------

Problems = List[str]


def _to_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(type(value).__name__)
    return value


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("bool")
    if isinstance(value, float) and not value.is_integer():
        raise ValueError(value)
    return int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("bool")
    result = float(value)
    if not math.isfinite(result):
        raise ValueError(value)
    return result


def _to_str(value: Any) -> str:
    if not isinstance(value, str):
        raise TypeError(type(value).__name__)
    return value


_COERCE: Dict[str, Callable[[Any], Any]] = {
    "bool": _to_bool,
    "int": _to_int,
    "float": _to_float,
    "str": _to_str,
}

# Values outside these bounds fall back to the field default.
_LIMITS: Dict[str, Callable[[Any], bool]] = {
    "detection.cooldown_minutes": lambda v: v >= 0,
    "detection.evaluation_window": lambda v: v > 0,
    "detection.evaluation_interval": lambda v: v > 0,
    "detection.min_confidence": lambda v: 0 <= v <= 1,
    "detection.max_cases_per_day": lambda v: v >= 0,
    "hearing.jury_size": lambda v: v > 0,
    "hearing.deliberation_timeout": lambda v: v > 0,
    "hearing.min_vote_threshold": lambda v: v >= 1,
    "punishment.default_duration": lambda v: v > 0,
    "punishment.max_duration": lambda v: v > 0,
    "punishment.escalation_multiplier": lambda v: v >= 1,
    "punishment.tier_escalation_repeats": lambda v: v > 0,
    "api.timeout": lambda v: v > 0,
    "api.retry_attempts": lambda v: v > 0,
    "api.retry_delay": lambda v: v >= 0,
    "api.max_queue_size": lambda v: v > 0,
    "humor.dry_wit_level": lambda v: 0 <= v <= 1,
    "humor.max_commentary_length": lambda v: v > 0,
    "security.max_evidence_age": lambda v: v > 0,
    "security.case_retention": lambda v: v > 0,
}


def _pick(cls, raw: Any, section: str, problems: Problems, **nested: Any):
    """
    Build a section dataclass from the enumerated fields present in `raw`.
    Each value is coerced to its declared type and checked against _LIMITS;
    a value that fails either keeps the field default and is reported in `problems`.
    """
    if not isinstance(raw, Mapping):
        if raw is not None:
            problems.append(f"{section or 'config'}: expected a mapping, got {type(raw).__name__}")
        raw = {}
    kwargs: Dict[str, Any] = {}
    for item in fields(cls):
        if item.name not in raw:
            continue
        path = f"{section}.{item.name}" if section else item.name
        value = raw[item.name]
        convert = nested.get(item.name)
        if convert is not None:
            kwargs[item.name] = convert(value, path, problems)
            continue
        coerce = _COERCE.get(item.type)
        try:
            value = coerce(value) if coerce else value
        except (TypeError, ValueError):
            problems.append(f"{path}: {value!r} is not a valid {item.type}")
            continue
        check = _LIMITS.get(path)
        if check is not None and not check(value):
            problems.append(f"{path}: {value!r} is out of range")
            continue
        kwargs[item.name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class DetectionConfig:
    enabled: bool = True
    cooldown_minutes: float = 30
    evaluation_window: int = 10
    evaluation_interval: int = 5
    min_confidence: float = 0.6
    max_cases_per_day: int = 3


@dataclass(frozen=True)
class HearingConfig:
    enabled: bool = True
    jury_size: int = 3
    deliberation_timeout: float = 30.0  # seconds
    require_unanimity: bool = False
    min_vote_threshold: int = 2


@dataclass(frozen=True)
class TierConfig:
    duration: float  # minutes
    severity: int


def _default_tiers() -> Dict[str, TierConfig]:
    return {
        "minor": TierConfig(duration=30, severity=1),
        "moderate": TierConfig(duration=60, severity=2),
        "severe": TierConfig(duration=120, severity=3),
    }


def _default_offense_severity() -> Dict[str, int]:
    return {
        "repeated_questions": 1,
        "validation_seeking": 1,
        "overthinking": 2,
        "avoidance": 2,
    }


def _tiers_from(raw: Any, path: str, problems: Problems) -> Dict[str, TierConfig]:
    if not isinstance(raw, Mapping):
        problems.append(f"{path}: expected a mapping of tiers")
        return _default_tiers()
    tiers: Dict[str, TierConfig] = {}
    for name, value in raw.items():
        try:
            tier = TierConfig(duration=_to_float(value["duration"]), severity=_to_int(value["severity"]))
        except (KeyError, TypeError, ValueError):
            problems.append(f"{path}.{name}: malformed tier {value!r}")
            continue
        if tier.duration <= 0:
            problems.append(f"{path}.{name}: duration must be > 0")
            continue
        tiers[str(name)] = tier
    return tiers


def _typed_map(coerce: Callable[[Any], Any], default: Callable[[], Dict[str, Any]]):
    def convert(raw: Any, path: str, problems: Problems) -> Dict[str, Any]:
        if not isinstance(raw, Mapping):
            problems.append(f"{path}: expected a mapping")
            return default()
        result: Dict[str, Any] = {}
        for key, value in raw.items():
            try:
                result[str(key)] = coerce(value)
            except (TypeError, ValueError):
                problems.append(f"{path}.{key}: {value!r} is not valid")
        return result

    return convert


@dataclass(frozen=True)
class PunishmentConfig:
    enabled: bool = True
    default_duration: float = 60
    max_duration: float = 1440
    escalation_multiplier: float = 1.5
    tier_escalation_repeats: int = 3
    tiers: Dict[str, TierConfig] = field(default_factory=_default_tiers)
    offense_severity: Dict[str, int] = field(default_factory=_default_offense_severity)


@dataclass(frozen=True)
class ApiConfig:
    enabled: bool = True
    endpoint: str = "https://api.clawtrial.app/api/v1/cases"
    case_url: str = "https://clawtrial.app/cases"
    timeout: float = 10.0  # seconds
    retry_attempts: int = 3
    retry_delay: float = 5.0  # seconds
    max_queue_size: int = 100


def _default_triggers() -> Dict[str, bool]:
    return {
        "repeated_questions": True,
        "validation_seeking": True,
        "overthinking": True,
        "avoidance": True,
    }


@dataclass(frozen=True)
class HumorConfig:
    enabled: bool = True
    dry_wit_level: float = 0.8
    max_commentary_length: int = 280
    triggers: Dict[str, bool] = field(default_factory=_default_triggers)


@dataclass(frozen=True)
class SecurityConfig:
    max_evidence_age: float = 86400  # seconds
    case_retention: int = 90  # days


@dataclass(frozen=True)
class CourtConfig:
    enabled: bool = True
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    hearing: HearingConfig = field(default_factory=HearingConfig)
    punishment: PunishmentConfig = field(default_factory=PunishmentConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    humor: HumorConfig = field(default_factory=HumorConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], problems: Optional[Problems] = None) -> "CourtConfig":
        """Typed settings from a config tree. Invalid values keep their defaults."""
        found: Problems = problems if problems is not None else []
        settings = _pick(
            cls,
            raw,
            "",
            found,
            detection=partial(_pick, DetectionConfig),
            hearing=partial(_pick, HearingConfig),
            punishment=partial(
                _pick,
                PunishmentConfig,
                tiers=_tiers_from,
                offense_severity=_typed_map(_to_int, _default_offense_severity),
            ),
            api=partial(_pick, ApiConfig),
            humor=partial(_pick, HumorConfig, triggers=_typed_map(_to_bool, _default_triggers)),
            security=partial(_pick, SecurityConfig),
        )
        if problems is None:
            for problem in found:
                logger.warning("Ignoring config value %s", problem)
        return settings

    @classmethod
    def validate(cls, raw: Mapping[str, Any]) -> Problems:
        found: Problems = []
        cls.from_dict(raw, found)
        return found

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_CONFIG: Dict[str, Any] = CourtConfig().as_dict()


# ---------------------------
# Tree helpers
# ---------------------------

def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Merge `override` onto `base` without mutating either.
    Mappings merge recursively; scalars and lists replace wholesale.
    """
    result: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping):
            current = result.get(key)
            result[key] = deep_merge(current if isinstance(current, Mapping) else {}, value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def merge_with_defaults(stored: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not stored:
        return copy.deepcopy(DEFAULT_CONFIG)
    return deep_merge(DEFAULT_CONFIG, stored)


def _split_path(path: str) -> list[str]:
    parts = path.split(".")
    if not path or any(not part for part in parts):
        raise ValueError(f"Malformed config path: {path!r}")
    return parts


def get_path(tree: Mapping[str, Any], path: str, default: Any = None) -> Any:
    current: Any = tree
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return default
        current = current.get(part, _MISSING)
        if current is _MISSING:
            return default
    return current


def set_path(tree: MutableMapping[str, Any], path: str, value: Any) -> None:
    parts = _split_path(path)
    current = tree
    for part in parts[:-1]:
        child = current.get(part)
        if not isinstance(child, MutableMapping):
            child = {}
            current[part] = child
        current = child
    current[parts[-1]] = value


# ---------------------------
# Backends
# ---------------------------

class ConfigBackend:
    name = "abstract"

    def read(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def write(self, tree: Mapping[str, Any]) -> None:
        raise NotImplementedError


class JsonFileBackend(ConfigBackend):
    name = "file"

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else default_config_path()

    def read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigBackendError(f"Could not read {self.path}: {exc}") from exc

    def write(self, tree: Mapping[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(tree, handle, indent=2, sort_keys=True)
            tmp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as exc:
            raise ConfigBackendError(f"Could not write {self.path}: {exc}") from exc


class MemoryBackend(ConfigBackend):
    """Store the tree under one key of a host-provided key/value mapping."""

    name = "memory"

    def __init__(self, store: Optional[MutableMapping[str, Any]] = None, key: str = MEMORY_CONFIG_KEY) -> None:
        self.store: MutableMapping[str, Any] = store if store is not None else {}
        self.key = key

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            stored = self.store.get(self.key)
        except Exception as exc:
            raise ConfigBackendError(f"Host memory read failed: {exc}") from exc
        return copy.deepcopy(stored) if stored is not None else None

    def write(self, tree: Mapping[str, Any]) -> None:
        try:
            self.store[self.key] = copy.deepcopy(dict(tree))
        except Exception as exc:
            raise ConfigBackendError(f"Host memory write failed: {exc}") from exc


# ---------------------------
# Store
# ---------------------------

class ConfigStore:
    """Configuration tree loaded once per process and mutated by path."""

    def __init__(self, backend: Optional[ConfigBackend] = None) -> None:
        self._backend = backend or JsonFileBackend()
        self._tree: Optional[Dict[str, Any]] = None
        self._pending: Set[asyncio.Task] = set()
        self._write_lock = threading.Lock()
        self._version = 0
        self._written_version = 0
        self._settings: Optional[CourtConfig] = None

    @property
    def loaded(self) -> bool:
        return self._tree is not None

    @property
    def backend(self) -> ConfigBackend:
        return self._backend

    def load(self) -> Dict[str, Any]:
        stored: Any = None
        try:
            stored = self._backend.read()
        except ConfigBackendError as exc:
            logger.warning("Config backend %s unavailable, using defaults: %s", self._backend.name, exc)
        if stored is not None and not isinstance(stored, Mapping):
            logger.warning("Ignoring non-mapping stored config (%s)", type(stored).__name__)
            stored = None
        self._tree = merge_with_defaults(stored)
        self._settings = None
        return copy.deepcopy(self._tree)

    def get(self, path: str, default: Any = None) -> Any:
        tree = self._tree if self._tree is not None else DEFAULT_CONFIG
        return copy.deepcopy(get_path(tree, path, default))

    def set(self, path: str, value: Any) -> None:
        """
        Set one value and persist the tree. Raises ValueError for a malformed
        path or a value the schema would reject; the tree is left unchanged.
        """
        if self._tree is None:
            self.load()
        candidate = copy.deepcopy(self._tree)
        set_path(candidate, path, copy.deepcopy(value))
        introduced = set(CourtConfig.validate(candidate)) - set(CourtConfig.validate(self._tree))
        if introduced:
            raise ValueError("; ".join(sorted(introduced)))
        self._tree = candidate
        self._settings = None
        self._persist()

    def settings(self) -> CourtConfig:
        if self._tree is None:
            return CourtConfig.from_dict(DEFAULT_CONFIG)
        if self._settings is None:
            self._settings = CourtConfig.from_dict(self._tree)
        return self._settings

    def as_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._tree if self._tree is not None else DEFAULT_CONFIG)

    def public_config(self) -> Dict[str, Any]:
        """Settings that are safe to show in chat or status output."""
        return {
            "enabled": self.get("enabled"),
            "detection": {
                "enabled": self.get("detection.enabled"),
                "cooldown_minutes": self.get("detection.cooldown_minutes"),
                "max_cases_per_day": self.get("detection.max_cases_per_day"),
            },
            "hearing": {
                "enabled": self.get("hearing.enabled"),
                "jury_size": self.get("hearing.jury_size"),
            },
            "punishment": {
                "enabled": self.get("punishment.enabled"),
                "default_duration": self.get("punishment.default_duration"),
            },
            "api": {
                "enabled": self.get("api.enabled"),
            },
        }

    async def flush(self) -> None:
        """Wait for outstanding background saves."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _persist(self) -> None:
        self._version += 1
        snapshot = copy.deepcopy(self._tree)
        version = self._version
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save(snapshot, version)
            return
        task = loop.create_task(asyncio.to_thread(self._save, snapshot, version))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _save(self, snapshot: Dict[str, Any], version: int) -> None:
        with self._write_lock:
            if version < self._written_version:
                return
            try:
                self._backend.write(snapshot)
            except ConfigBackendError as exc:
                logger.warning("Config save via %s failed, keeping in-memory values: %s", self._backend.name, exc)
                return
            self._written_version = version
