from __future__ import annotations


class InstallerError(RuntimeError):
    """Base class for installer errors raised outside the step boundary."""


class ConfigError(InstallerError):
    """The install configuration file is unusable."""


class OutcomeTransitionError(ValueError):
    """A step already holding a terminal outcome was assigned another one."""

    def __init__(self, step: str, current: str, attempted: str) -> None:
        super().__init__(f"Step {step!r} is already {current}; refusing to record {attempted}")
        self.step = step
        self.current = current
        self.attempted = attempted
