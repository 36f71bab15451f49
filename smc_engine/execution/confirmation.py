# smc_engine/execution/confirmation.py
"""
Entry confirmation gate.

Upstream detectors describe their evidence as free-form tags. The gate folds
synonyms into a fixed vocabulary and applies exactly one policy:

- a unified EntryGateMode (ANY / STRUCTURE_SHIFT_ONLY / STRUCTURE_SHIFT_AND_OTE /
  TRIPLE / SCORING), or
- when the mode is ANY, the legacy independent flags and presets.

A unified mode other than ANY always wins over the legacy flags.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# canonical tags
MSS = "MSS"
MSS_RETEST = "MSS_RETEST"
OTE = "OTE"
OB = "OB"
SWEEP = "SWEEP"
IFVG = "IFVG"
BREAKER = "BREAKER"

_SYNONYMS: Dict[str, str] = {
    "ORDERBLOCK": OB,
    "ORDER_BLOCK": OB,
    "OB": OB,
    "LIQUIDITYSWEEP": SWEEP,
    "LIQUIDITY_SWEEP": SWEEP,
    "SWEEP": SWEEP,
    "FVG": IFVG,
    "FAIRVALUEGAP": IFVG,
    "FAIR_VALUE_GAP": IFVG,
    "IFVG": IFVG,
    "MSS": MSS,
    "STRUCTURESHIFT": MSS,
    "STRUCTURE_SHIFT": MSS,
    "MSS_RETEST": MSS_RETEST,
    "OTE": OTE,
    "BREAKER": BREAKER,
    "BREAKERBLOCK": BREAKER,
    "BREAKER_BLOCK": BREAKER,
}
# confirmed-shift variants: MSS when counted once, else a retest tag
_CONFIRMED_SHIFT = {"MSS_CTM", "CONFIRMEDMSS", "CONFIRMED_MSS"}

_MSS_FAMILY = {MSS, MSS_RETEST}
_STRICT_ORDER = (SWEEP, MSS, BREAKER, IFVG)


class EntryGateMode(str, Enum):
    ANY = "any"
    STRUCTURE_SHIFT_ONLY = "structure_shift_only"
    STRUCTURE_SHIFT_AND_OTE = "structure_shift_and_ote"
    TRIPLE = "triple"
    SCORING = "scoring"


class EntryPreset(str, Enum):
    NONE = "none"
    MODEL_A = "model_a"  # MSS + OTE
    MODEL_B = "model_b"  # MSS + IFVG
    MODEL_C = "model_c"  # BREAKER + IFVG


class MultiConfirmation(str, Enum):
    NONE = "none"
    SINGLE = "single"
    DOUBLE = "double"
    TRIPLE = "triple"


_PRESET_TAGS = {
    EntryPreset.MODEL_A: (MSS, OTE),
    EntryPreset.MODEL_B: (MSS, IFVG),
    EntryPreset.MODEL_C: (BREAKER, IFVG),
}
_MULTI_REQUIRED = {
    MultiConfirmation.SINGLE: 1,
    MultiConfirmation.DOUBLE: 2,
    MultiConfirmation.TRIPLE: 3,
}


def _default_weights() -> Dict[str, int]:
    return {MSS: 2, MSS_RETEST: 1, OTE: 2, OB: 1, SWEEP: 1, IFVG: 1, BREAKER: 1}


@dataclass
class ConfirmationConfig:
    mode: EntryGateMode = EntryGateMode.ANY
    strict_sequence: bool = True
    count_mss_once: bool = True

    # scoring
    score_weights: Dict[str, int] = field(default_factory=_default_weights)
    score_default: int = 0
    score_min_total: int = 3

    # legacy flags, only consulted when mode is ANY
    require_structure_shift: bool = False
    require_structure_shift_and_ote: bool = False
    require_triple: bool = False
    preset: EntryPreset = EntryPreset.NONE
    use_scoring: bool = False
    multi_confirmation: MultiConfirmation = MultiConfirmation.NONE

    def has_legacy_flags(self) -> bool:
        return (
            self.require_structure_shift
            or self.require_structure_shift_and_ote
            or self.require_triple
            or self.preset != EntryPreset.NONE
            or self.use_scoring
            or self.multi_confirmation != MultiConfirmation.NONE
        )


@dataclass(frozen=True)
class GateVerdict:
    allowed: bool
    mode: EntryGateMode
    tags: Tuple[str, ...]
    score: Optional[int] = None
    reason: str = ""


def canonicalize(tags: Iterable[str], *, count_mss_once: bool = True) -> List[str]:
    """Canonical tags in input order (duplicates kept); blanks dropped."""
    out: List[str] = []
    for raw in tags:
        if raw is None:
            continue
        t = str(raw).strip()
        if not t:
            continue
        key = t.upper()
        if key in _CONFIRMED_SHIFT:
            out.append(MSS if count_mss_once else MSS_RETEST)
        else:
            out.append(_SYNONYMS.get(key, key))
    return out


def distinct(tags: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for t in tags:
        if t not in seen:
            seen.add(t)
            out.append(t)
    return out


class ConfirmationGate:
    def __init__(self, config: Optional[ConfirmationConfig] = None):
        self.config = config or ConfirmationConfig()
        if self.config.mode != EntryGateMode.ANY and self.config.has_legacy_flags():
            logger.info(
                "entry gate mode %s selected; legacy confirmation flags are ignored",
                self.config.mode.value,
            )

    def score(self, tags: Iterable[str]) -> int:
        cfg = self.config
        return sum(cfg.score_weights.get(t, cfg.score_default) for t in distinct(tags))

    def is_entry_allowed(self, tags: Iterable[str]) -> bool:
        return self.evaluate(tags).allowed

    def evaluate(self, tags: Iterable[str]) -> GateVerdict:
        cfg = self.config
        can = canonicalize(tags, count_mss_once=cfg.count_mss_once)
        present = set(can)
        has_mss = bool(present & _MSS_FAMILY)

        def verdict(allowed: bool, reason: str, score: Optional[int] = None) -> GateVerdict:
            return GateVerdict(allowed=allowed, mode=cfg.mode, tags=tuple(distinct(can)), score=score, reason=reason)

        if cfg.mode == EntryGateMode.STRUCTURE_SHIFT_ONLY:
            return verdict(has_mss, "structure shift" if has_mss else "missing structure shift")

        if cfg.mode == EntryGateMode.STRUCTURE_SHIFT_AND_OTE:
            ok = has_mss and OTE in present
            return verdict(ok, "structure shift + ote" if ok else "missing structure shift or ote")

        if cfg.mode == EntryGateMode.TRIPLE:
            if not (has_mss and BREAKER in present and IFVG in present):
                return verdict(False, "missing structure shift, breaker or gap")
            if cfg.strict_sequence and not _in_order(can, _STRICT_ORDER):
                return verdict(False, "sweep -> shift -> breaker -> gap order not met")
            return verdict(True, "triple confirmation")

        if cfg.mode == EntryGateMode.SCORING:
            total = self.score(can)
            return verdict(total >= cfg.score_min_total, f"score {total}/{cfg.score_min_total}", total)

        return self._legacy(can, present, has_mss, verdict)

    def _legacy(self, can, present, has_mss, verdict) -> GateVerdict:
        cfg = self.config

        if cfg.require_structure_shift and not has_mss:
            return verdict(False, "legacy: structure shift required")

        if cfg.preset != EntryPreset.NONE:
            needed = _PRESET_TAGS[cfg.preset]
            if not all(t in present for t in needed):
                return verdict(False, f"preset {cfg.preset.value}: needs {'+'.join(needed)}")

        if has_mss and not (
            cfg.use_scoring
            or cfg.multi_confirmation != MultiConfirmation.NONE
            or cfg.require_triple
            or cfg.require_structure_shift_and_ote
            or cfg.preset != EntryPreset.NONE
        ):
            return verdict(True, "structure shift present")

        if cfg.require_structure_shift_and_ote and not (has_mss and OTE in present):
            return verdict(False, "legacy: structure shift + ote required")

        if cfg.require_triple and not (MSS in present and BREAKER in present and IFVG in present):
            return verdict(False, "legacy: triple confirmation required")

        if cfg.use_scoring:
            total = self.score(can)
            return verdict(total >= cfg.score_min_total, f"score {total}/{cfg.score_min_total}", total)

        if cfg.multi_confirmation == MultiConfirmation.NONE:
            return verdict(bool(can), "any tag" if can else "no tags")

        required = _MULTI_REQUIRED[cfg.multi_confirmation]
        count = len(distinct(can))
        return verdict(count >= required, f"{count}/{required} distinct confirmations")


def _in_order(tags: List[str], order: Tuple[str, ...]) -> bool:
    """True when each tag in `order` appears, first occurrences strictly increasing."""
    positions = []
    for t in order:
        if t not in tags:
            return False
        positions.append(tags.index(t))
    return positions == sorted(positions)
