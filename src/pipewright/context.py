# context.py
"""Run-scoped data visible to expressions and steps."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

from .model import Event, Workflow


MASK = "***"


@dataclass(frozen=True)
class Context:
    """
    Everything a `${{ }}` expression can see.

    Built once at run start and narrowed per job / per step with `derive`;
    never mutated in place.
    """
    github: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    secrets: Mapping[str, str] = field(default_factory=dict)
    inputs: Mapping[str, Any] = field(default_factory=dict)
    matrix: Mapping[str, Any] = field(default_factory=dict)
    strategy: Mapping[str, Any] = field(default_factory=dict)
    steps: Mapping[str, Any] = field(default_factory=dict)
    needs: Mapping[str, Any] = field(default_factory=dict)
    job: Mapping[str, Any] = field(default_factory=dict)
    runner: Mapping[str, Any] = field(default_factory=dict)
    workspace: Path = Path(".")

    # read by success() / failure() / cancelled()
    job_status: str = "success"
    run_cancelled: bool = False

    def derive(self, **changes: Any) -> Context:
        return replace(self, **changes)

    def lookup_root(self, name: str) -> Any:
        """Top-level names an expression can reference."""
        roots = {
            "github": self.github,
            "env": self.env,
            "secrets": self.secrets,
            "inputs": self.inputs,
            "matrix": self.matrix,
            "strategy": self.strategy,
            "steps": self.steps,
            "needs": self.needs,
            "job": self.job,
            "runner": self.runner,
        }
        if name not in roots:
            raise KeyError(name)
        return roots[name]


def build_run_context(
    workflow: Workflow,
    event: Event,
    *,
    run_id: int,
    run_number: int = 1,
    secrets: Mapping[str, str] | None = None,
    inputs: Mapping[str, Any] | None = None,
    workspace: str | Path = ".",
) -> Context:
    ref = event.resolved_ref
    ref_name = ref.split("/", 2)[-1] if ref.startswith("refs/") else ref
    ws = Path(workspace).resolve()
    github = {
        "event_name": event.name,
        "event": dict(event.payload),
        "ref": ref,
        "ref_name": ref_name,
        "sha": event.resolved_sha,
        "repository": event.resolved_repository,
        "actor": event.resolved_actor,
        "run_id": str(run_id),
        "run_number": str(run_number),
        "workflow": workflow.name,
        "workspace": str(ws),
        "job": "",
    }
    return Context(
        github=github,
        env=dict(workflow.env),
        secrets=dict(secrets or {}),
        inputs=dict(inputs or {}),
        workspace=ws,
    )


class SecretMasker:
    """
    Replaces secret values with `***` before text reaches logs or outputs.

    Shared by all jobs of a run; `add` may be called from job threads
    (`::add-mask::`), so the value set is guarded by a lock.
    """

    def __init__(self, values: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._values: set[str] = set()
        for v in values:
            self.add(v)

    def add(self, value: str) -> None:
        value = str(value)
        if not value.strip():
            return
        with self._lock:
            self._values.add(value)
            # multi-line secrets are also masked line by line
            for line in value.splitlines():
                if line.strip():
                    self._values.add(line)

    def mask(self, text: str) -> str:
        with self._lock:
            values = sorted(self._values, key=len, reverse=True)
        for v in values:
            if v in text:
                text = text.replace(v, MASK)
        return text

    def mask_mapping(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: self.mask(v) if isinstance(v, str) else v for k, v in data.items()}
