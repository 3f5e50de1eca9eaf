# model.py
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


# ---------------------------------------------------------------------
# Workflow definition
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step:
    """
    A single unit of execution inside a job.

    Tagged variant: `kind` is "run" (shell command) or "uses" (action
    reference). Exactly one of `run` / `uses` is set.
    """
    name: str
    run: str | None = None
    uses: str | None = None
    id: str | None = None
    with_: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    condition: str | None = None
    continue_on_error: bool = False
    shell: str | None = None
    working_directory: str | None = None
    timeout_minutes: float | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} must define exactly one of 'run' or 'uses'")

    @property
    def kind(self) -> str:
        return "run" if self.run is not None else "uses"


@dataclass(frozen=True)
class Matrix:
    """
    Axes whose cross product expands one Job into many executions.

    Expansion order: first axis varies slowest, values in declared order.
    """
    axes: Dict[str, Tuple[Any, ...]]
    include: Tuple[Dict[str, Any], ...] = ()
    exclude: Tuple[Dict[str, Any], ...] = ()

    def expand(self) -> List[Dict[str, Any]]:
        for axis, values in self.axes.items():
            if not values:
                raise ValueError(f"matrix axis '{axis}' has no values")

        names = list(self.axes)
        combos: List[Dict[str, Any]] = []
        if names:
            for values in itertools.product(*(self.axes[n] for n in names)):
                combos.append(dict(zip(names, values)))

        combos = [c for c in combos if not any(_partial_match(c, ex) for ex in self.exclude)]
        base_count = len(combos)

        for inc in self.include:
            # An include entry extends every original combination it does not
            # contradict on an original axis; otherwise it becomes a new one.
            extended = False
            for combo in combos[:base_count]:
                if all(combo[k] == v for k, v in inc.items() if k in self.axes):
                    combo.update(inc)
                    extended = True
            if not extended:
                combos.append(dict(inc))

        if not combos:
            raise ValueError("matrix expands to zero combinations")
        return combos


def _partial_match(combo: Mapping[str, Any], pattern: Mapping[str, Any]) -> bool:
    return all(combo.get(k) == v for k, v in pattern.items())


@dataclass(frozen=True)
class Trigger:
    """An (event type, filter) pair that causes a workflow to start a Run."""
    event: str
    branches: Tuple[str, ...] | None = None
    branches_ignore: Tuple[str, ...] | None = None
    tags: Tuple[str, ...] | None = None
    tags_ignore: Tuple[str, ...] | None = None
    paths: Tuple[str, ...] | None = None
    paths_ignore: Tuple[str, ...] | None = None
    types: Tuple[str, ...] | None = None
    crons: Tuple[str, ...] = ()
    inputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def matches(self, event: "Event") -> bool:
        from .triggers import trigger_matches
        return trigger_matches(self, event)


@dataclass(frozen=True)
class Job:
    """
    A CI job: ordered steps + dependencies + execution policy.

    `needs` names jobs that must finish before this one is considered.
    """
    id: str
    steps: Tuple[Step, ...]
    name: str | None = None
    runs_on: Any = None
    needs: Tuple[str, ...] = ()
    condition: str | None = None
    matrix: Optional[Matrix] = None
    fail_fast: bool = False
    max_parallel: int | None = None
    timeout_minutes: float | None = None
    env: Dict[str, str] = field(default_factory=dict)
    outputs: Dict[str, str] = field(default_factory=dict)
    continue_on_error: bool = False
    defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Workflow:
    name: str
    triggers: Tuple[Trigger, ...]
    jobs: Dict[str, Job]
    env: Dict[str, str] = field(default_factory=dict)
    permissions: Any = None
    defaults: Dict[str, Any] = field(default_factory=dict)
    source: str | None = None
    warnings: Tuple[str, ...] = ()

    def triggers_for(self, event_name: str) -> List[Trigger]:
        return [t for t in self.triggers if t.event == event_name]


# ---------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Event:
    """An incoming event: type tag + structured payload from the hosting platform."""
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ref: str | None = None
    sha: str | None = None
    actor: str | None = None
    repository: str | None = None
    changed_files: Tuple[str, ...] | None = None

    @property
    def resolved_ref(self) -> str:
        if self.ref:
            return self.ref
        if self.name == "pull_request":
            head = (self.payload.get("pull_request") or {}).get("head") or {}
            if head.get("ref"):
                return f"refs/heads/{head['ref']}"
        if self.name == "release":
            tag = (self.payload.get("release") or {}).get("tag_name")
            if tag:
                return f"refs/tags/{tag}"
        return str(self.payload.get("ref") or "")

    @property
    def resolved_sha(self) -> str:
        if self.sha:
            return self.sha
        if self.name == "pull_request":
            head = (self.payload.get("pull_request") or {}).get("head") or {}
            if head.get("sha"):
                return str(head["sha"])
        return str(self.payload.get("after") or self.payload.get("sha") or "")

    @property
    def resolved_actor(self) -> str:
        if self.actor:
            return self.actor
        sender = self.payload.get("sender") or {}
        return str(sender.get("login") or "")

    @property
    def resolved_repository(self) -> str:
        if self.repository:
            return self.repository
        repo = self.payload.get("repository") or {}
        return str(repo.get("full_name") or "")

    @property
    def branch(self) -> str | None:
        ref = self.resolved_ref
        return ref[len("refs/heads/"):] if ref.startswith("refs/heads/") else None

    @property
    def tag(self) -> str | None:
        ref = self.resolved_ref
        return ref[len("refs/tags/"):] if ref.startswith("refs/tags/") else None

    @property
    def base_branch(self) -> str | None:
        """Target branch of a pull request."""
        base = (self.payload.get("pull_request") or {}).get("base") or {}
        return base.get("ref")

    @property
    def action(self) -> str | None:
        return self.payload.get("action")

    @property
    def files(self) -> Tuple[str, ...] | None:
        if self.changed_files is not None:
            return self.changed_files
        commits = self.payload.get("commits")
        if not commits:
            return None
        out: List[str] = []
        for c in commits:
            for key in ("added", "modified", "removed"):
                out.extend(c.get(key) or [])
        return tuple(dict.fromkeys(out))


# ---------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------

class JobState(str, Enum):
    PENDING = "pending"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.SKIPPED, JobState.CANCELLED)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StepResult:
    name: str
    id: str | None
    outcome: str          # success | failure | skipped | cancelled
    conclusion: str       # outcome after continue-on-error
    exit_code: int | None = None
    outputs: Dict[str, str] = field(default_factory=dict)
    error: str | None = None
    attempts: int = 0


@dataclass
class JobResult:
    key: str
    job_id: str
    state: JobState
    reason: str | None = None
    matrix: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass
class RunResult:
    run_id: int
    workflow: str
    event: str
    status: RunStatus
    jobs: Dict[str, JobResult] = field(default_factory=dict)

    def states(self) -> Dict[str, str]:
        return {k: r.state.value for k, r in self.jobs.items()}
