# parser.py
"""
Workflow documents -> validated `Workflow` objects (and back).
"""

from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .cron import CronError, parse_cron
from .errors import ParseError, UnknownJob
from .expressions import check_syntax, has_expression
from .model import Job, Matrix, Step, Trigger, Workflow
from .ui.console import get_console


# ---------------------------------------------------------------------
# Schema: recognised keys
# ---------------------------------------------------------------------

WORKFLOW_KEYS = {"name", "run-name", "on", "permissions", "env", "defaults", "concurrency", "jobs"}

JOB_KEYS = {
    "name", "runs-on", "needs", "if", "strategy", "timeout-minutes", "steps", "env",
    "outputs", "continue-on-error", "defaults", "permissions", "environment",
    "concurrency", "container", "services",
}

STEP_KEYS = {
    "id", "name", "run", "uses", "with", "env", "if", "continue-on-error", "shell",
    "working-directory", "timeout-minutes",
}

STRATEGY_KEYS = {"matrix", "fail-fast", "max-parallel"}

_REF_FILTERS = {"branches", "branches-ignore", "tags", "tags-ignore", "paths", "paths-ignore"}

TRIGGER_KEYS: Dict[str, set] = {
    "push": _REF_FILTERS,
    "pull_request": {"branches", "branches-ignore", "paths", "paths-ignore", "types"},
    "pull_request_target": {"branches", "branches-ignore", "paths", "paths-ignore", "types"},
    "workflow_dispatch": {"inputs"},
    "schedule": set(),
}
# any other event only understands `types`
DEFAULT_TRIGGER_KEYS = {"types"}

WORKFLOW_SUFFIXES = (".yml", ".yaml")


def _step_path(job_id: str, index: int, key: str | None = None) -> str:
    base = f"jobs.{job_id}.steps[{index}]"
    return f"{base}.{key}" if key else base


class _DocumentParser:
    def __init__(self, *, strict: bool, source: str | None):
        self.strict = strict
        self.source = source
        self.warnings: List[str] = []

    # ---- helpers ----

    def error(self, path: str, message: str) -> ParseError:
        return ParseError(path, message, source=self.source)

    def check_keys(self, data: Mapping[str, Any], allowed: set, path: str) -> None:
        for key in data:
            if key not in allowed:
                where = f"{path}.{key}" if path else str(key)
                if self.strict:
                    raise self.error(where, "unknown key")
                self.warnings.append(f"{where}: unknown key ignored")

    def mapping(self, value: Any, path: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping):
            raise self.error(path, f"expected a mapping, got {type(value).__name__}")
        return dict(value)

    def string_list(self, value: Any, path: str) -> Tuple[str, ...]:
        if isinstance(value, str):
            return (value,)
        if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
            return tuple(str(v) for v in value)
        raise self.error(path, "expected a string or a list of strings")

    def string_map(self, value: Any, path: str) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for k, v in self.mapping(value, path).items():
            if isinstance(v, (Mapping, list)):
                raise self.error(f"{path}.{k}", "expected a scalar value")
            out[str(k)] = _scalar_text(v)
            self.check_expressions(out[str(k)], f"{path}.{k}")
        return out

    def boolean(self, value: Any, path: str) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise self.error(path, "expected true or false")

    def positive_number(self, value: Any, path: str) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise self.error(path, "expected a positive number")
        return float(value)

    def check_expressions(self, text: Any, path: str) -> None:
        if not has_expression(text):
            return
        problems = check_syntax(text)
        if problems:
            raise self.error(path, problems[0])

    def condition(self, value: Any, path: str) -> str | None:
        if value is None:
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        if not isinstance(value, (str, int, float)):
            raise self.error(path, "expected an expression string")
        text = str(value)
        if has_expression(text):
            self.check_expressions(text, path)
        else:
            self.check_expressions("${{ " + text + " }}", path)
        return text

    # ---- triggers ----

    def triggers(self, value: Any) -> Tuple[Trigger, ...]:
        if value is None:
            raise self.error("on", "workflow must declare at least one trigger")
        if isinstance(value, str):
            return (self.trigger(value, None, f"on.{value}"),)
        if isinstance(value, list):
            if not value:
                raise self.error("on", "workflow must declare at least one trigger")
            return tuple(self.trigger(str(ev), None, f"on[{i}]") for i, ev in enumerate(value))
        if isinstance(value, Mapping):
            if not value:
                raise self.error("on", "workflow must declare at least one trigger")
            return tuple(self.trigger(str(ev), spec, f"on.{ev}") for ev, spec in value.items())
        raise self.error("on", "expected an event name, a list of events or a mapping")

    def trigger(self, event: str, spec: Any, path: str) -> Trigger:
        if event == "schedule":
            if not isinstance(spec, list) or not spec:
                raise self.error(path, "schedule expects a non-empty list of {cron: ...} entries")
            crons: List[str] = []
            for i, entry in enumerate(spec):
                entry_path = f"{path}[{i}]"
                entry = self.mapping(entry, entry_path)
                self.check_keys(entry, {"cron"}, entry_path)
                cron = entry.get("cron")
                if not isinstance(cron, str):
                    raise self.error(f"{entry_path}.cron", "expected a cron string")
                try:
                    parse_cron(cron)
                except CronError as e:
                    raise self.error(f"{entry_path}.cron", str(e)) from e
                crons.append(cron)
            return Trigger(event="schedule", crons=tuple(crons))

        spec = self.mapping(spec, path)
        self.check_keys(spec, TRIGGER_KEYS.get(event, DEFAULT_TRIGGER_KEYS), path)
        for a, b in (("branches", "branches-ignore"), ("tags", "tags-ignore"), ("paths", "paths-ignore")):
            if a in spec and b in spec:
                raise self.error(path, f"'{a}' and '{b}' cannot be combined")

        def opt(key: str) -> Optional[Tuple[str, ...]]:
            return self.string_list(spec[key], f"{path}.{key}") if key in spec else None

        inputs: Dict[str, Dict[str, Any]] = {}
        if event == "workflow_dispatch":
            for name, decl in self.mapping(spec.get("inputs"), f"{path}.inputs").items():
                decl = self.mapping(decl, f"{path}.inputs.{name}")
                self.check_keys(decl, {"description", "required", "default", "type", "options"}, f"{path}.inputs.{name}")
                inputs[str(name)] = decl

        return Trigger(
            event=event,
            branches=opt("branches"),
            branches_ignore=opt("branches-ignore"),
            tags=opt("tags"),
            tags_ignore=opt("tags-ignore"),
            paths=opt("paths"),
            paths_ignore=opt("paths-ignore"),
            types=opt("types"),
            inputs=inputs,
        )

    # ---- jobs ----

    def matrix(self, value: Any, path: str) -> Matrix:
        if isinstance(value, str):
            raise self.error(path, "dynamic matrices are not supported; declare the axes inline")
        data = self.mapping(value, path)
        axes: Dict[str, Tuple[Any, ...]] = {}
        include: List[Dict[str, Any]] = []
        exclude: List[Dict[str, Any]] = []
        for key, values in data.items():
            key_path = f"{path}.{key}"
            if key in ("include", "exclude"):
                if not isinstance(values, list):
                    raise self.error(key_path, "expected a list of mappings")
                target = include if key == "include" else exclude
                for i, entry in enumerate(values):
                    target.append(self.mapping(entry, f"{key_path}[{i}]"))
                continue
            if not isinstance(values, list):
                raise self.error(key_path, "matrix axis must be a list of values")
            if not values:
                raise self.error(key_path, "matrix axis must not be empty")
            axes[str(key)] = tuple(values)
        if not axes and not include:
            raise self.error(path, "matrix declares no axes")
        matrix = Matrix(axes=axes, include=tuple(include), exclude=tuple(exclude))
        try:
            matrix.expand()
        except ValueError as e:
            raise self.error(path, str(e)) from e
        return matrix

    def step(self, data: Any, job_id: str, index: int) -> Step:
        path = _step_path(job_id, index)
        data = self.mapping(data, path)
        self.check_keys(data, STEP_KEYS, path)

        run, uses = data.get("run"), data.get("uses")
        if run is None and uses is None:
            raise self.error(path, "step must define either 'run' or 'uses'")
        if run is not None and uses is not None:
            raise self.error(_step_path(job_id, index, "uses"), "step cannot define both 'run' and 'uses'")
        if run is not None:
            if not isinstance(run, (str, int, float)):
                raise self.error(_step_path(job_id, index, "run"), "expected a command string")
            run = str(run)
            self.check_expressions(run, _step_path(job_id, index, "run"))
        if uses is not None and (not isinstance(uses, str) or not uses.strip()):
            raise self.error(_step_path(job_id, index, "uses"), "expected an action reference")

        with_ = self.mapping(data.get("with"), _step_path(job_id, index, "with"))
        for k, v in with_.items():
            self.check_expressions(v, _step_path(job_id, index, f"with.{k}"))

        name = data.get("name")
        if name is None:
            name = uses if uses is not None else f"Run {run.strip().splitlines()[0] if run.strip() else ''}".strip()

        step_id = data.get("id")
        if step_id is not None and not isinstance(step_id, str):
            raise self.error(_step_path(job_id, index, "id"), "expected a string")

        return Step(
            name=str(name),
            run=run,
            uses=uses,
            id=step_id,
            with_=with_,
            env=self.string_map(data.get("env"), _step_path(job_id, index, "env")),
            condition=self.condition(data.get("if"), _step_path(job_id, index, "if")),
            continue_on_error=(
                self.boolean(data["continue-on-error"], _step_path(job_id, index, "continue-on-error"))
                if "continue-on-error" in data else False
            ),
            shell=data.get("shell"),
            working_directory=data.get("working-directory"),
            timeout_minutes=(
                self.positive_number(data["timeout-minutes"], _step_path(job_id, index, "timeout-minutes"))
                if "timeout-minutes" in data else None
            ),
        )

    def job(self, job_id: str, data: Any) -> Job:
        path = f"jobs.{job_id}"
        data = self.mapping(data, path)
        self.check_keys(data, JOB_KEYS, path)

        steps_raw = data.get("steps")
        if not isinstance(steps_raw, list) or not steps_raw:
            raise self.error(f"{path}.steps", "job must have at least one step")
        steps = tuple(self.step(s, job_id, i) for i, s in enumerate(steps_raw))

        seen_ids: Dict[str, int] = {}
        for i, s in enumerate(steps):
            if s.id is None:
                continue
            if s.id in seen_ids:
                raise self.error(_step_path(job_id, i, "id"), f"duplicate step id '{s.id}'")
            seen_ids[s.id] = i

        needs = self.string_list(data["needs"], f"{path}.needs") if "needs" in data else ()

        strategy = self.mapping(data.get("strategy"), f"{path}.strategy")
        self.check_keys(strategy, STRATEGY_KEYS, f"{path}.strategy")
        matrix = self.matrix(strategy["matrix"], f"{path}.strategy.matrix") if "matrix" in strategy else None
        max_parallel = None
        if "max-parallel" in strategy:
            max_parallel = int(self.positive_number(strategy["max-parallel"], f"{path}.strategy.max-parallel"))

        return Job(
            id=job_id,
            name=str(data["name"]) if data.get("name") is not None else None,
            runs_on=data.get("runs-on"),
            steps=steps,
            needs=needs,
            condition=self.condition(data.get("if"), f"{path}.if"),
            matrix=matrix,
            fail_fast=self.boolean(strategy["fail-fast"], f"{path}.strategy.fail-fast") if "fail-fast" in strategy else False,
            max_parallel=max_parallel,
            timeout_minutes=(
                self.positive_number(data["timeout-minutes"], f"{path}.timeout-minutes")
                if "timeout-minutes" in data else None
            ),
            env=self.string_map(data.get("env"), f"{path}.env"),
            outputs=self.string_map(data.get("outputs"), f"{path}.outputs"),
            continue_on_error=(
                self.boolean(data["continue-on-error"], f"{path}.continue-on-error")
                if "continue-on-error" in data else False
            ),
            defaults=self.mapping(data.get("defaults"), f"{path}.defaults"),
        )

    # ---- workflow ----

    def workflow(self, doc: Any) -> Workflow:
        if not isinstance(doc, Mapping):
            raise self.error("", "workflow document must be a mapping")
        doc = dict(doc)
        # YAML 1.1 reads a bare `on:` key as boolean True
        if True in doc and "on" not in doc:
            doc["on"] = doc.pop(True)
        self.check_keys(doc, WORKFLOW_KEYS, "")

        triggers = self.triggers(doc.get("on"))

        jobs_raw = self.mapping(doc.get("jobs"), "jobs")
        if not jobs_raw:
            raise self.error("jobs", "workflow must define at least one job")
        jobs = {str(job_id): self.job(str(job_id), data) for job_id, data in jobs_raw.items()}

        for job in jobs.values():
            for need in job.needs:
                if need not in jobs:
                    raise UnknownJob(f"jobs.{job.id}.needs", f"unknown job '{need}'", source=self.source)

        name = doc.get("name")
        if name is None:
            name = Path(self.source).name if self.source else "workflow"

        return Workflow(
            name=str(name),
            triggers=triggers,
            jobs=jobs,
            env=self.string_map(doc.get("env"), "env"),
            permissions=doc.get("permissions"),
            defaults=self.mapping(doc.get("defaults"), "defaults"),
            source=self.source,
            warnings=tuple(self.warnings),
        )


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def parse_workflow(document: Any, *, strict: bool = False, source: str | None = None) -> Workflow:
    """
    Parse a workflow from a mapping, YAML text or bytes.

    Raises ParseError with the offending path. In non-strict mode unknown
    keys are reported as warnings on the console and kept on
    `Workflow.warnings`.
    """
    if isinstance(document, bytes):
        document = document.decode("utf-8")
    if isinstance(document, str):
        try:
            document = yaml.safe_load(document)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            where = f"line {mark.line + 1}" if mark is not None else ""
            raise ParseError(where, f"invalid YAML: {getattr(e, 'problem', None) or e}", source=source) from e

    parser = _DocumentParser(strict=strict, source=source)
    workflow = parser.workflow(document)

    console = get_console()
    for w in workflow.warnings:
        console.print_warning(f"{source}: {w}" if source else w)
    return workflow


def load_workflow(path: str | Path, *, strict: bool = False) -> Workflow:
    """
    Load a workflow from a file.

    `.yml` / `.yaml` files are workflow documents. A `.py` file must define
    either:
      - workflow() -> Workflow
      - WORKFLOW = Workflow(...)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")

    if wf_path.suffix in WORKFLOW_SUFFIXES:
        return parse_workflow(wf_path.read_text(encoding="utf-8"), strict=strict, source=str(path))

    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .yml/.yaml or .py file, got: {wf_path.name}")

    module_name = f"pipewright_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    wf = None
    fn = globals_dict.get("workflow")
    if "WORKFLOW" in globals_dict:
        wf = globals_dict["WORKFLOW"]
    elif callable(fn) and getattr(fn, "__module__", None) == module_name:
        # a workflow() defined in the file, not the imported dsl helper
        wf = fn()

    if not isinstance(wf, Workflow):
        raise TypeError(
            "Workflow module must return/define a Workflow. "
            "Define workflow() -> Workflow or WORKFLOW = workflow(...)."
        )
    return wf


def load_workflows(directory: str | Path, *, strict: bool = False) -> List[Workflow]:
    """Load every workflow document in `directory`, sorted by file name."""
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Workflow directory not found: {root}")
    files = sorted(p for p in root.iterdir() if p.is_file() and p.suffix in WORKFLOW_SUFFIXES)
    return [load_workflow(p, strict=strict) for p in files]


# ---------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------

def _trigger_to_document(t: Trigger) -> Any:
    if t.event == "schedule":
        return [{"cron": c} for c in t.crons]
    spec: Dict[str, Any] = {}
    for key, attr in (
        ("branches", "branches"), ("branches-ignore", "branches_ignore"),
        ("tags", "tags"), ("tags-ignore", "tags_ignore"),
        ("paths", "paths"), ("paths-ignore", "paths_ignore"),
        ("types", "types"),
    ):
        value = getattr(t, attr)
        if value is not None:
            spec[key] = list(value)
    if t.inputs:
        spec["inputs"] = {k: dict(v) for k, v in t.inputs.items()}
    return spec or None


def _step_to_document(s: Step) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": s.name}
    if s.id is not None:
        out["id"] = s.id
    if s.condition is not None:
        out["if"] = s.condition
    if s.run is not None:
        out["run"] = s.run
    else:
        out["uses"] = s.uses
    if s.with_:
        out["with"] = dict(s.with_)
    if s.env:
        out["env"] = dict(s.env)
    if s.shell is not None:
        out["shell"] = s.shell
    if s.working_directory is not None:
        out["working-directory"] = s.working_directory
    if s.continue_on_error:
        out["continue-on-error"] = True
    if s.timeout_minutes is not None:
        out["timeout-minutes"] = s.timeout_minutes
    return out


def _job_to_document(j: Job) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if j.name is not None:
        out["name"] = j.name
    if j.runs_on is not None:
        out["runs-on"] = j.runs_on
    if j.needs:
        out["needs"] = list(j.needs)
    if j.condition is not None:
        out["if"] = j.condition
    if j.matrix is not None or j.max_parallel is not None or j.fail_fast:
        strategy: Dict[str, Any] = {"fail-fast": j.fail_fast}
        if j.matrix is not None:
            matrix: Dict[str, Any] = {k: list(v) for k, v in j.matrix.axes.items()}
            if j.matrix.include:
                matrix["include"] = [dict(i) for i in j.matrix.include]
            if j.matrix.exclude:
                matrix["exclude"] = [dict(e) for e in j.matrix.exclude]
            strategy["matrix"] = matrix
        if j.max_parallel is not None:
            strategy["max-parallel"] = j.max_parallel
        out["strategy"] = strategy
    if j.timeout_minutes is not None:
        out["timeout-minutes"] = j.timeout_minutes
    if j.continue_on_error:
        out["continue-on-error"] = True
    if j.env:
        out["env"] = dict(j.env)
    if j.defaults:
        out["defaults"] = dict(j.defaults)
    if j.outputs:
        out["outputs"] = dict(j.outputs)
    out["steps"] = [_step_to_document(s) for s in j.steps]
    return out


def to_document(workflow: Workflow) -> Dict[str, Any]:
    """Inverse of parse_workflow (modulo defaults)."""
    doc: Dict[str, Any] = {
        "name": workflow.name,
        "on": {t.event: _trigger_to_document(t) for t in workflow.triggers},
    }
    if workflow.permissions is not None:
        doc["permissions"] = workflow.permissions
    if workflow.env:
        doc["env"] = dict(workflow.env)
    if workflow.defaults:
        doc["defaults"] = dict(workflow.defaults)
    doc["jobs"] = {job_id: _job_to_document(j) for job_id, j in workflow.jobs.items()}
    return doc


def dump_workflow(workflow: Workflow) -> str:
    return yaml.safe_dump(to_document(workflow), sort_keys=False, default_flow_style=False)
