"""
Exceptions and step results shared by the supervisor components.

Every step error derives from SupervisorError so the monitor loop can catch
them as a family. ShutdownRequested is a BaseException on purpose: it must
pass through the `except Exception` guards around each step.
"""
import enum
from typing import List, Optional


class StepResult(enum.Enum):
    """Outcome of one install/build step as seen by the monitor loop."""
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"


class SupervisorError(Exception):
    """Base class for recoverable supervisor failures."""

    def __init__(self, message: str, output_tail: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.output_tail = list(output_tail or [])


class FingerprintError(SupervisorError):
    """An input could not be read for a reason other than being absent."""


class InstallError(SupervisorError):
    """Both the normal and the hard-reset install failed."""


class BuildError(SupervisorError):
    """The build command failed or did not produce its output directory."""


class StartError(SupervisorError):
    """The service did not become observably alive after launch."""


class StopError(SupervisorError):
    """A stop could not be completed. Logged, never escalated."""


class ShutdownRequested(BaseException):
    """Raised from the signal handler to unwind the loop for an orderly stop."""

    def __init__(self, signum: int) -> None:
        super().__init__(signum)
        self.signum = signum
