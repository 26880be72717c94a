from __future__ import annotations


class AutotuneError(RuntimeError):
    """Base class for every failure that must stop the tuning run."""

    exit_code = 1


class MissingConfigError(AutotuneError):
    exit_code = 2


class StrategyParseError(AutotuneError):
    exit_code = 3


class InvalidModeError(AutotuneError):
    exit_code = 4


class TopologyUnavailableError(AutotuneError):
    exit_code = 5


class WriteError(AutotuneError):
    exit_code = 6


class ServiceWiringError(AutotuneError):
    exit_code = 7
