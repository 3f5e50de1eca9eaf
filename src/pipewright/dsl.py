# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .model import Job, Matrix, Step, Trigger, Workflow


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    id: str | None = None,
    cwd: str | None = None,
    shell: str | None = None,
    env: Optional[Dict[str, Any]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    timeout_minutes: float | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        id=id,
        working_directory=cwd,
        shell=shell,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
        timeout_minutes=timeout_minutes,
    )


def uses(
    name: str,
    action: str,
    *,
    id: str | None = None,
    with_: Optional[Dict[str, Any]] = None,
    env: Optional[Dict[str, Any]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
) -> Step:
    """Create a step delegated to an action."""
    return Step(
        name=name,
        uses=action,
        id=id,
        with_=dict(with_ or {}),
        env={k: str(v) for k, v in (env or {}).items()},
        condition=if_,
        continue_on_error=continue_on_error,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    *,
    include: Sequence[Dict[str, Any]] = (),
    exclude: Sequence[Dict[str, Any]] = (),
    **axes: Iterable[Any],
) -> Matrix:
    """
    Example:
        matrix(os=["ubuntu", "macos"], python=["3.11", "3.12"])
    """
    return Matrix(
        axes={k: tuple(v) for k, v in axes.items()},
        include=tuple(dict(i) for i in include),
        exclude=tuple(dict(e) for e in exclude),
    )


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    name: str | None = None,
    runs_on: Any = "ubuntu-latest",
    needs: Optional[Sequence[str]] = None,
    if_: str | None = None,
    strategy: Optional[Matrix] = None,
    fail_fast: bool = False,
    max_parallel: int | None = None,
    timeout_minutes: float | None = None,
    env: Optional[Dict[str, Any]] = None,
    outputs: Optional[Dict[str, str]] = None,
    cwd: str | None = None,  # default working directory applied to run steps missing one
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({id!r}) must have at least one step")

    if cwd is not None:
        steps_final = [
            s if s.kind != "run" or s.working_directory is not None else replace(s, working_directory=cwd)
            for s in steps_final
        ]

    return Job(
        id=id,
        name=name,
        runs_on=runs_on,
        steps=tuple(steps_final),
        needs=tuple(needs or ()),
        condition=if_,
        matrix=strategy,
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        timeout_minutes=timeout_minutes,
        env={k: str(v) for k, v in (env or {}).items()},
        outputs=dict(outputs or {}),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: str | None = None
        self._runs_on: Any = "ubuntu-latest"
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._outputs: dict[str, str] = {}
        self._condition: str | None = None
        self._matrix: Matrix | None = None
        self._fail_fast = False
        self._timeout: float | None = None

    def named(self, name: str):
        self._name = name
        return self

    def runs_on(self, runner: Any):
        self._runs_on = runner
        return self

    def depends_on(self, *job_ids: str):
        self._needs.extend(job_ids)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kwargs: Any):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def use_action(self, name: str, action: str, **kwargs: Any):
        self._steps.append(uses(name, action, **kwargs))
        return self

    def with_env(self, **env):
        # force values to str, the shell only sees strings
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_outputs(self, **outputs: str):
        self._outputs.update(outputs)
        return self

    def with_matrix(self, m: Matrix, *, fail_fast: bool = False):
        self._matrix = m
        self._fail_fast = fail_fast
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            steps_list=self._steps,
            name=self._name,
            runs_on=self._runs_on,
            needs=self._needs,
            if_=self._condition,
            strategy=self._matrix,
            fail_fast=self._fail_fast,
            timeout_minutes=self._timeout,
            env=self._env,
            outputs=self._outputs,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Triggers + workflow
# ---------------------------------------------------------------------

def on(event: str, **filters: Any) -> Trigger:
    """
    on("push", branches=["main"]) / on("schedule", crons=["0 0 * * *"])
    """
    def opt(key: str):
        value = filters.get(key)
        return tuple(value) if value is not None else None

    return Trigger(
        event=event,
        branches=opt("branches"),
        branches_ignore=opt("branches_ignore"),
        tags=opt("tags"),
        tags_ignore=opt("tags_ignore"),
        paths=opt("paths"),
        paths_ignore=opt("paths_ignore"),
        types=opt("types"),
        crons=tuple(filters.get("crons") or ()),
        inputs=dict(filters.get("inputs") or {}),
    )


def workflow(name: str, *jobs: Job, on: Sequence[Trigger] | Trigger, env: Optional[Dict[str, Any]] = None) -> Workflow:
    """
    Workflow definition helper. Users can write, in a `*_workflow.py` file:

        from pipewright.dsl import wf, job, sh, on

        WORKFLOW = wf("ci", job("test", sh("Run", "pytest")), on=on("push"))

    The result goes through the same validation as a YAML document.
    """
    from .parser import parse_workflow, to_document

    triggers = (on,) if isinstance(on, Trigger) else tuple(on)
    wf = Workflow(
        name=name,
        triggers=triggers,
        jobs={j.id: j for j in jobs},
        env={k: str(v) for k, v in (env or {}).items()},
    )
    if len(wf.jobs) != len(jobs):
        raise ValueError(f"workflow({name!r}) has duplicate job ids")
    return parse_workflow(to_document(wf), strict=True)


wf = workflow  # short alias
