# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class PipewrightError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Errors that stop a run before it starts
# ----------------------------------------------------------------------

@dataclass
class ParseError(PipewrightError):
    """
    Malformed workflow document.

    `path` points at the offending node, e.g. ``jobs.build.steps[2].uses``.
    """
    path: str
    message: str
    source: str | None = None

    def __str__(self) -> str:
        where = f"{self.source}: " if self.source else ""
        return f"{where}{self.path}: {self.message}" if self.path else f"{where}{self.message}"


@dataclass
class UnknownJob(ParseError):
    """A `needs` entry names a job that does not exist."""


@dataclass
class CycleDetected(PipewrightError):
    cycle: list[str]

    def __str__(self) -> str:
        return "Dependency cycle detected: " + " -> ".join(self.cycle)


# ----------------------------------------------------------------------
# Expression errors
# ----------------------------------------------------------------------

@dataclass
class ExpressionError(PipewrightError):
    expression: str
    message: str

    def __str__(self) -> str:
        return f"Invalid expression '{self.expression}': {self.message}"


@dataclass
class UnresolvedReference(ExpressionError):
    reference: str = ""

    def __str__(self) -> str:
        return f"Unresolved reference '{self.reference}' in '{self.expression}'"


# ----------------------------------------------------------------------
# Execution errors
# ----------------------------------------------------------------------

@dataclass
class StepFailure(PipewrightError):
    job: str
    step: str
    reason: str
    exit_code: int | None = None

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{code}: {self.reason}"


@dataclass
class JobFailure(PipewrightError):
    job: str
    reason: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"[{self.job}] {self.reason}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class JobTimeout(JobFailure):
    minutes: float = 0.0


@dataclass
class Cancelled(PipewrightError):
    job: str
    reason: str = "cancelled"

    def __str__(self) -> str:
        return f"[{self.job}] {self.reason}"
