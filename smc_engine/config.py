from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from smc_engine.common.timeframes import require_timeframe
from smc_engine.execution.confirmation import ConfirmationConfig
from smc_engine.execution.phase_manager import PhaseConfig
from smc_engine.liquidity.sweeps import SweepConfig
from smc_engine.liquidity.zones import LiquidityConfig
from smc_engine.structure.structure_shift import StructureShiftConfig
from smc_engine.zones.ote import EntryZoneConfig, TouchMethod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    pip_size: float = 0.0001
    execution_timeframe: str = "M15"
    structure_timeframe: str = "M5"
    bias_timeframe: str = "H1"
    # trailing rows treated as still forming
    open_bar_count: int = 2
    min_bars: int = 30
    ote_touch_method: TouchMethod = TouchMethod.WICK

    liquidity: LiquidityConfig = field(default_factory=LiquidityConfig)
    sweeps: SweepConfig = field(default_factory=SweepConfig)
    structure: StructureShiftConfig = field(default_factory=StructureShiftConfig)
    entry_zones: EntryZoneConfig = field(default_factory=EntryZoneConfig)
    confirmation: ConfirmationConfig = field(default_factory=ConfirmationConfig)
    phases: PhaseConfig = field(default_factory=PhaseConfig)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "EngineConfig":
        """
        Build from a nested dict (e.g. parsed from a settings file).

        Never raises: unknown keys and values that do not fit the field type
        are logged and the documented default is kept.
        """
        return _build(cls, raw or {}, "engine")


def _build(cls, raw: Mapping[str, Any], path: str):
    if not isinstance(raw, Mapping):
        logger.warning("config %s: expected a mapping, got %r; using defaults", path, type(raw).__name__)
        return cls()

    fields = {f.name: f for f in dataclasses.fields(cls)}
    defaults = cls()
    kwargs: Dict[str, Any] = {}
    for key, value in raw.items():
        if key not in fields:
            logger.warning("config %s: unknown setting '%s' ignored", path, key)
            continue
        current = getattr(defaults, key)
        try:
            coerced = _coerce(current, value, f"{path}.{key}")
            if key.endswith("timeframe"):
                require_timeframe(coerced)
            kwargs[key] = coerced
        except (TypeError, ValueError, KeyError) as exc:
            logger.warning("config %s.%s: %r not usable (%s); default %r kept", path, key, value, exc, current)
    return cls(**kwargs)


def _coerce(default: Any, value: Any, path: str) -> Any:
    if dataclasses.is_dataclass(default):
        return _build(type(default), value, path)
    if isinstance(default, Enum):
        enum_cls = type(default)
        if isinstance(value, enum_cls):
            return value
        if isinstance(value, str):
            key = value.strip()
            for member in enum_cls:
                if key.upper() == member.name or key.lower() == str(member.value).lower():
                    return member
        return enum_cls(value)
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0", "yes", "no"):
            return value.strip().lower() in ("true", "1", "yes")
        raise ValueError("not a boolean")
    if isinstance(default, int):
        if isinstance(value, bool):
            raise ValueError("boolean given for an integer setting")
        as_float = float(value)
        if not as_float.is_integer():
            raise ValueError("not an integer")
        return int(as_float)
    if isinstance(default, float):
        if isinstance(value, bool):
            raise ValueError("boolean given for a numeric setting")
        return float(value)
    if isinstance(default, str):
        if not isinstance(value, str):
            raise TypeError("not a string")
        return value
    if isinstance(default, dict):
        if not isinstance(value, Mapping):
            raise TypeError("not a mapping")
        key_type = type(next(iter(default))) if default else None
        if key_type is not None and issubclass(key_type, Enum):
            value = {k if isinstance(k, key_type) else _coerce(next(iter(default)), k, path): v for k, v in value.items()}
        merged = dict(default)
        merged.update(value)
        return merged
    if default is None:
        return value
    return type(default)(value)


DEFAULT_CONFIG = EngineConfig()
