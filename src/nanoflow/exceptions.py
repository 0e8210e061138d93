"""Exceptions raised by nanoflow."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence


class NanoflowError(Exception):
    """Base exception for all nanoflow errors."""

    pass


class ConfigValidationError(NanoflowError):
    """Run options are invalid; raised before any stage starts."""

    def __init__(self, message: str, flag: Optional[str] = None):
        super().__init__(message)
        self.flag = flag

    def __str__(self) -> str:
        msg = super().__str__()
        if self.flag and self.flag not in msg:
            return f"{self.flag}: {msg}"
        return msg


class MissingInputError(NanoflowError):
    """A declared file or directory does not exist when it is needed."""

    def __init__(self, path: str | Path, what: str = "input"):
        self.path = Path(path)
        self.what = what
        super().__init__(f"{what} not found: {self.path}")


class StageExecutionError(NanoflowError):
    """An external tool exited nonzero."""

    def __init__(
        self,
        stage: str,
        label: str,
        returncode: int,
        command: Optional[Sequence[str]] = None,
        stderr: str = "",
    ):
        self.stage = stage
        self.label = label
        self.returncode = returncode
        self.command = list(command) if command else []
        self.stderr = stderr
        super().__init__(f"{stage}[{label}] exited with status {returncode}")


class ChannelError(NanoflowError):
    """A channel was misused (double consumption, write after close...)."""

    pass


class GraphError(NanoflowError):
    """The stage graph is malformed."""

    pass
