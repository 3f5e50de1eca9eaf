# dispatcher.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .cron import parse_cron
from .dag import topo_order
from .errors import PipewrightError
from .model import Event, Workflow
from .runner import Run, WorkflowRunner
from .ui.console import get_console


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_input(name: str, decl: Mapping[str, Any], value: Any) -> Any:
    kind = str(decl.get("type") or "string")
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text not in ("true", "false"):
            raise ValueError(f"input '{name}' must be a boolean, got {value!r}")
        return text == "true"
    if kind == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"input '{name}' must be a number, got {value!r}") from None
        return int(number) if number.is_integer() else number
    if kind == "choice":
        options = [str(o) for o in decl.get("options") or []]
        if str(value) not in options:
            raise ValueError(f"input '{name}' must be one of {options}, got {value!r}")
        return str(value)
    return str(value)


def resolve_inputs(declared: Mapping[str, Mapping[str, Any]], given: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Validate manual-dispatch inputs against their declarations and apply defaults."""
    given = dict(given or {})
    unknown = sorted(set(given) - set(declared))
    if unknown:
        raise ValueError(f"unexpected inputs: {unknown}")

    out: Dict[str, Any] = {}
    for name, decl in declared.items():
        decl = decl or {}
        if name in given:
            out[name] = _coerce_input(name, decl, given[name])
        elif "default" in decl:
            out[name] = _coerce_input(name, decl, decl["default"])
        elif decl.get("required"):
            raise ValueError(f"missing required input '{name}'")
    return out


class Dispatcher:
    """
    Routes incoming events to workflows and keeps the run history.

    One Run per (event, matching workflow); runs execute in the runner's
    background threads.
    """

    def __init__(
        self,
        workflows: Iterable[Workflow] = (),
        runner: WorkflowRunner | None = None,
        *,
        default_ref: str = "refs/heads/main",
    ):
        self.runner = runner or WorkflowRunner()
        self.default_ref = default_ref
        self._workflows: Dict[str, Workflow] = {}
        self._runs: Dict[int, Run] = {}
        self._run_numbers: Dict[str, int] = {}
        self._lock = threading.Lock()
        for wf in workflows:
            self.register(wf)

    # ---- registry ----

    def register(self, workflow: Workflow) -> None:
        """Add a workflow; raises CycleDetected / UnknownJob for a job graph that can never run."""
        topo_order(list(workflow.jobs.values()))
        with self._lock:
            if workflow.name in self._workflows:
                raise ValueError(f"workflow '{workflow.name}' is already registered")
            self._workflows[workflow.name] = workflow

    @property
    def workflows(self) -> List[Workflow]:
        with self._lock:
            return list(self._workflows.values())

    def workflow(self, name: str) -> Workflow:
        with self._lock:
            if name not in self._workflows:
                raise KeyError(name)
            return self._workflows[name]

    def matching(self, event: Event) -> List[Workflow]:
        return [wf for wf in self.workflows if any(t.matches(event) for t in wf.triggers)]

    # ---- run history ----

    def get_run(self, run_id: int) -> Run:
        with self._lock:
            if run_id not in self._runs:
                raise KeyError(run_id)
            return self._runs[run_id]

    @property
    def runs(self) -> List[Run]:
        with self._lock:
            return list(self._runs.values())

    # ---- dispatch ----

    def _start(self, workflow: Workflow, event: Event, inputs: Optional[Mapping[str, Any]] = None) -> Run:
        with self._lock:
            number = self._run_numbers.get(workflow.name, 0) + 1
            self._run_numbers[workflow.name] = number
        run = self.runner.start(workflow, event, inputs=inputs, run_number=number)
        with self._lock:
            self._runs[run.run_id] = run
        return run

    def dispatch(self, event: Event) -> List[Run]:
        """Start one run for every registered workflow whose triggers accept `event`."""
        started: List[Run] = []
        matched = self.matching(event)
        for wf in matched:
            try:
                started.append(self._start(wf, event))
            except PipewrightError as e:
                get_console().print_error("Workflow not started", f"workflow '{wf.name}' not started: {e}")
        if not matched:
            get_console().print_debug(f"no workflow matches event '{event.name}'")
        return started

    def dispatch_manual(
        self,
        name: str,
        ref: str | None = None,
        inputs: Optional[Mapping[str, Any]] = None,
    ) -> Run:
        wf = self.workflow(name)
        triggers = wf.triggers_for("workflow_dispatch")
        if not triggers:
            raise ValueError(f"workflow '{name}' has no workflow_dispatch trigger")
        resolved = resolve_inputs(triggers[0].inputs, inputs)
        ref = ref or self.default_ref
        if not ref.startswith("refs/"):
            ref = f"refs/heads/{ref}"
        event = Event(
            name="workflow_dispatch",
            payload={"inputs": dict(resolved), "ref": ref, "workflow": name},
            ref=ref,
        )
        return self._start(wf, event, inputs=resolved)

    def fire_schedule(self, workflow: Workflow, cron: str) -> Run:
        event = Event(name="schedule", payload={"schedule": cron}, ref=self.default_ref)
        return self._start(workflow, event)


class ScheduleTimer:
    """
    Fires `schedule` triggers.

    Each `tick(now)` starts at most one run per workflow when any of its cron
    expressions has a fire time in `(last_tick, now]`; boundaries missed
    between two ticks are coalesced into that single run.
    """

    def __init__(self, dispatcher: Dispatcher, *, start: datetime | None = None):
        self.dispatcher = dispatcher
        self.last_tick = start

    def due(self, now: datetime) -> List[tuple[Workflow, str]]:
        if self.last_tick is None:
            return []
        out: List[tuple[Workflow, str]] = []
        for wf in self.dispatcher.workflows:
            for trigger in wf.triggers_for("schedule"):
                cron = next((c for c in trigger.crons if parse_cron(c).fires_between(self.last_tick, now)), None)
                if cron is not None:
                    out.append((wf, cron))
                    break
        return out

    def tick(self, now: datetime | None = None) -> List[Run]:
        now = now or utcnow()
        if self.last_tick is not None and now <= self.last_tick:
            return []
        fired: List[Run] = []
        for wf, cron in self.due(now):
            try:
                fired.append(self.dispatcher.fire_schedule(wf, cron))
            except PipewrightError as e:
                get_console().print_error("Scheduled workflow not started", f"workflow '{wf.name}' not started: {e}")
        self.last_tick = now
        return fired

    def run_forever(
        self,
        stop: threading.Event,
        interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        console = get_console()
        if self.last_tick is None:
            self.last_tick = clock()
        while not stop.wait(interval):
            for run in self.tick(clock()):
                console.print_info(f"schedule: started run {run.run_id} of '{run.workflow.name}'")
