from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from .model import WorkConfiguration

Stage = Literal["open", "compile", "allocate", "write", "read", "build", "validate", "dispatch", "await"]


class BenchError(Exception):
    """Base class for harness failures.

    Every error records the stage that failed and, when known, the work
    configuration being processed, so the failing call can be reproduced.
    """

    def __init__(self, message: str, *, stage: Stage, configuration: WorkConfiguration | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.configuration = configuration

    def __str__(self) -> str:
        where = f"stage={self.stage}"
        if self.configuration is not None:
            where += f", configuration=({self.configuration.describe()})"
        return f"{self.message} [{where}]"


class CompileError(BenchError):
    """Kernel source failed to build, or a requested entry point is missing."""

    def __init__(
        self,
        message: str,
        *,
        log: str = "",
        stage: Stage = "compile",
        configuration: WorkConfiguration | None = None,
    ) -> None:
        super().__init__(message, stage=stage, configuration=configuration)
        self.log = log


class DeviceUnavailable(BenchError):
    """No capable OpenCL device could be selected or used."""


class ArgumentMismatch(BenchError):
    """Kernel argument arity/type or host data length does not match."""


class InvalidWorkConfiguration(BenchError):
    """Global/local sizes violate divisibility or device limits."""


class KernelExecutionFault(BenchError):
    """The device reported a failure while executing enqueued work."""


class OutOfBounds(BenchError):
    """A buffer transfer request exceeds the allocation."""
