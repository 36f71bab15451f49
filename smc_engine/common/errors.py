from __future__ import annotations


class EngineError(Exception):
    """Base class for smc_engine errors."""


class BarDataError(EngineError, ValueError):
    """Input bars violate the frame contract (columns, ordering, lengths)."""


class DetectionError(EngineError):
    """
    A detector could not evaluate the current window.

    Recoverable: the orchestrator logs it, withholds that stage's output
    for the cycle and keeps going.
    """


class PhaseTransitionError(EngineError, ValueError):
    """A phase transition that is not in the transition graph."""
