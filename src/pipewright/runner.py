# runner.py
from __future__ import annotations

import itertools
import os
import platform
import tempfile
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .context import Context, SecretMasker, build_run_context
from .dag import ancestors, topo_order
from .errors import Cancelled, ExpressionError, JobFailure, JobTimeout, StepFailure
from .executors import (
    ActionRegistry,
    CancelToken,
    CommandRequest,
    CommandRunner,
    ShellCommandRunner,
    default_shell,
    parse_key_value_file,
)
from .expressions import evaluate_condition, interpolate, interpolate_value, to_string
from .model import (
    Event,
    Job,
    JobResult,
    JobState,
    RunResult,
    RunStatus,
    Step,
    StepResult,
    Workflow,
)
from .ui.console import Console, get_console


ADD_MASK = "::add-mask::"

# JobState -> `needs.<job>.result`
_RESULT_NAMES = {
    JobState.SUCCEEDED: "success",
    JobState.FAILED: "failure",
    JobState.CANCELLED: "cancelled",
    JobState.SKIPPED: "skipped",
}


# ----------------------------------------------------------------------
# Policies
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry around a single step invocation. Not applied by default.

    delay before attempt n (n >= 2) is `delay * backoff ** (n - 2)`.
    """
    max_attempts: int = 1
    delay: float = 0.0
    backoff: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay_before(self, attempt: int) -> float:
        return self.delay * (self.backoff ** max(0, attempt - 2))


NO_RETRY = RetryPolicy()


# ----------------------------------------------------------------------
# Execution nodes
# ----------------------------------------------------------------------

@dataclass
class JobExecution:
    """One schedulable node: a job, or one matrix combination of it."""
    key: str
    job: Job
    index: int
    matrix: Dict[str, Any] = field(default_factory=dict)
    matrix_index: int = 0
    matrix_total: int = 1
    state: JobState = JobState.PENDING
    reason: str | None = None
    result: JobResult | None = None
    token: CancelToken | None = None


def expand_jobs(workflow: Workflow) -> List[JobExecution]:
    """Materialise every Job (and matrix combination) as a JobExecution, in declaration order."""
    out: List[JobExecution] = []
    for job in workflow.jobs.values():
        if job.matrix is None:
            out.append(JobExecution(key=job.id, job=job, index=len(out)))
            continue
        combos = job.matrix.expand()
        for i, combo in enumerate(combos):
            label = ", ".join(to_string(v) for v in combo.values())
            out.append(JobExecution(
                key=f"{job.id} ({label})",
                job=job,
                index=len(out),
                matrix=combo,
                matrix_index=i,
                matrix_total=len(combos),
            ))
    return out


def _runner_os(runs_on: Any) -> str:
    labels = runs_on if isinstance(runs_on, list) else [runs_on]
    for label in labels:
        text = str(label or "").lower()
        if text.startswith("windows"):
            return "Windows"
        if text.startswith("macos"):
            return "macOS"
        if text.startswith("ubuntu") or text.startswith("linux"):
            return "Linux"
    return {"Darwin": "macOS"}.get(platform.system(), platform.system())


# ----------------------------------------------------------------------
# Run
# ----------------------------------------------------------------------

class Run:
    """
    One instantiation of a Workflow against one triggering Event.

    Owns the JobExecution DAG and the run Context. Scheduling happens in a
    background thread started by `start()`.
    """

    def __init__(
        self,
        runner: WorkflowRunner,
        workflow: Workflow,
        event: Event,
        *,
        run_id: int,
        run_number: int = 1,
        inputs: Optional[Mapping[str, Any]] = None,
    ):
        self.runner = runner
        self.workflow = workflow
        self.event = event
        self.run_id = run_id
        # raises CycleDetected / UnknownJob before anything starts
        topo_order(list(workflow.jobs.values()))
        self.executions = expand_jobs(workflow)
        self.context = build_run_context(
            workflow,
            event,
            run_id=run_id,
            run_number=run_number,
            secrets=runner.secrets,
            inputs=inputs,
            workspace=runner.workspace,
        )
        self.masker = SecretMasker(runner.secrets.values())
        self.result: RunResult | None = None

        self._by_job: Dict[str, List[JobExecution]] = {}
        for ex in self.executions:
            self._by_job.setdefault(ex.job.id, []).append(ex)
        self._needs = {j.id: list(j.needs) for j in workflow.jobs.values()}
        self._job_outputs: Dict[str, Dict[str, str]] = {j: {} for j in workflow.jobs}
        self._stop_new = False
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._error: BaseException | None = None
        self._thread: threading.Thread | None = None

    # ---- public API ----

    def start(self) -> Run:
        if self._thread is not None:
            raise RuntimeError(f"run {self.run_id} already started")
        self._thread = threading.Thread(target=self._main, name=f"pipewright-run-{self.run_id}", daemon=True)
        self._thread.start()
        return self

    def cancel(self) -> None:
        """Cancel every non-terminal job; running steps are interrupted."""
        self._cancel.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> RunResult:
        if not self._done.wait(timeout):
            raise TimeoutError(f"run {self.run_id} still running after {timeout}s")
        if self._error is not None:
            raise self._error
        if self.result is None:
            raise RuntimeError(f"run {self.run_id} finished without a result")
        return self.result

    def states(self) -> Dict[str, str]:
        return {ex.key: ex.state.value for ex in self.executions}

    @property
    def status(self) -> str:
        if self.result is not None:
            return self.result.status.value
        return "running"

    # ---- scheduler ----

    def _main(self) -> None:
        console = self.runner.console
        console.print_run_started(self.workflow.name, self.event.name, self.run_id, len(self.executions))
        try:
            self._schedule()
            self.result = RunResult(
                run_id=self.run_id,
                workflow=self.workflow.name,
                event=self.event.name,
                status=self._run_status(),
                jobs={ex.key: self._final_result(ex) for ex in self.executions},
            )
            console.print_results(self.result.states())
            console.print_run_finished(self.run_id, self.result.status.value)
        except BaseException as e:  # surfaced to wait()
            self._error = e
            console.print_exception(e)
        finally:
            self._done.set()

    def _schedule(self) -> None:
        cap = self.runner.max_workers
        pool_size = cap if cap else max(1, len(self.executions))
        running: Dict[Future, JobExecution] = {}

        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix=f"run{self.run_id}") as pool:
            while True:
                if self._cancel.is_set():
                    self._cancel_outstanding("run cancelled")

                self._resolve_pending()
                self._launch_eligible(pool, running)

                if not running:
                    stuck = [ex for ex in self.executions if not ex.state.terminal]
                    # unreachable on an acyclic graph; never leave a job non-terminal
                    for ex in stuck:
                        self._finish_without_running(ex, JobState.SKIPPED, "unsatisfiable dependencies")
                    break

                done, _ = wait(list(running), timeout=self.runner.poll_interval, return_when=FIRST_COMPLETED)
                for fut in done:
                    self._complete(running.pop(fut), fut)

    def _resolve_pending(self) -> None:
        """Pending -> Eligible / Skipped once every dependency is terminal."""
        changed = True
        while changed:
            changed = False
            for ex in self.executions:
                if ex.state is not JobState.PENDING:
                    continue
                deps = [d for n in ex.job.needs for d in self._by_job[n]]
                if any(not d.state.terminal for d in deps):
                    continue
                changed = True
                if self._stop_new:
                    self._finish_without_running(ex, JobState.CANCELLED, "fail-fast")
                    continue
                ctx = self._job_context(ex)
                if evaluate_condition(ex.job.condition, ctx):
                    ex.state = JobState.ELIGIBLE
                else:
                    self._finish_without_running(ex, JobState.SKIPPED, self._skip_reason(ex, ctx))

    def _launch_eligible(self, pool: ThreadPoolExecutor, running: Dict[Future, JobExecution]) -> None:
        """Eligible -> Running while runner slots are free, in declaration order."""
        cap = self.runner.max_workers
        for ex in self.executions:
            if ex.state is not JobState.ELIGIBLE:
                continue
            if cap and len(running) >= cap:
                return
            if ex.job.max_parallel:
                siblings = sum(1 for r in running.values() if r.job.id == ex.job.id)
                if siblings >= ex.job.max_parallel:
                    continue
            deadline = None
            if ex.job.timeout_minutes is not None:
                deadline = time.monotonic() + ex.job.timeout_minutes * 60
            ex.token = CancelToken(ex.key, deadline=deadline, timeout_minutes=ex.job.timeout_minutes)
            ex.state = JobState.RUNNING
            ctx = self._job_context(ex)
            running[pool.submit(self._run_job, ex, ctx, ex.token)] = ex

    def _complete(self, ex: JobExecution, fut: Future) -> None:
        try:
            result = fut.result()
        except Exception as e:  # _run_job reports failures in its result; this is a bug guard
            result = JobResult(key=ex.key, job_id=ex.job.id, state=JobState.FAILED, reason=str(e), matrix=ex.matrix)
        ex.result = result
        ex.state = result.state
        ex.reason = result.reason
        # publish-on-completion: dependents read these via needs.<job>.outputs
        self._job_outputs[ex.job.id].update(result.outputs)

        self.runner.console.print_job_finished(ex.key, ex.state.value, ex.reason, result.duration)

        failed = ex.state is JobState.FAILED or ex.reason == "timeout"
        if failed and ex.job.fail_fast and ex.matrix_total > 1:
            for sib in self._by_job[ex.job.id]:
                if sib is not ex:
                    self._cancel_execution(sib, "fail-fast")
        if failed and self.runner.fail_fast:
            self._stop_new = True
            for other in self.executions:
                if other is not ex:
                    self._cancel_execution(other, "fail-fast")

    def _cancel_outstanding(self, reason: str) -> None:
        for ex in self.executions:
            self._cancel_execution(ex, reason)

    def _cancel_execution(self, ex: JobExecution, reason: str) -> None:
        if ex.state in (JobState.PENDING, JobState.ELIGIBLE):
            self._finish_without_running(ex, JobState.CANCELLED, reason)
        elif ex.state is JobState.RUNNING and ex.token is not None:
            ex.token.cancel(reason)

    def _finish_without_running(self, ex: JobExecution, state: JobState, reason: str) -> None:
        ex.state = state
        ex.reason = reason
        if state is JobState.SKIPPED:
            self.runner.console.print_job_skipped(ex.key, reason)
        else:
            self.runner.console.print_job_finished(ex.key, state.value, reason)

    # ---- status helpers ----

    def _job_result_name(self, job_id: str) -> str:
        """Aggregate state of a (possibly matrix) job as `needs.<job>.result`."""
        states = [ex.state for ex in self._by_job[job_id]]
        if JobState.FAILED in states or any(ex.reason == "timeout" for ex in self._by_job[job_id]):
            return "failure"
        if JobState.CANCELLED in states:
            return "cancelled"
        if JobState.SUCCEEDED in states:
            return "success"
        if all(s is JobState.SKIPPED for s in states):
            return "skipped"
        return "pending"

    def _dependency_status(self, ex: JobExecution) -> str:
        """Status the job-level success()/failure() functions see."""
        status = "success"
        for anc in sorted(ancestors(ex.job.id, self._needs)):
            result = self._job_result_name(anc)
            if result == "failure":
                return "failure"
            if result == "cancelled":
                status = "cancelled"
            elif result == "skipped" and not self.runner.skipped_needs_pass and status == "success":
                status = "skipped"
        return status

    def _skip_reason(self, ex: JobExecution, ctx: Context) -> str:
        if ctx.job_status != "success" and not ex.job.condition:
            bad = [n for n in ex.job.needs if self._job_result_name(n) != "success"]
            return f"dependency {', '.join(bad)} did not succeed" if bad else "dependency did not succeed"
        return "condition evaluated to false"

    def _run_status(self) -> RunStatus:
        states = [ex.state for ex in self.executions]
        if JobState.FAILED in states or any(ex.reason == "timeout" for ex in self.executions):
            return RunStatus.FAILED
        if JobState.CANCELLED in states:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    def _final_result(self, ex: JobExecution) -> JobResult:
        if ex.result is not None:
            return ex.result
        return JobResult(key=ex.key, job_id=ex.job.id, state=ex.state, reason=ex.reason, matrix=ex.matrix)

    # ---- contexts ----

    def _job_context(self, ex: JobExecution) -> Context:
        needs = {
            n: {"result": self._job_result_name(n), "outputs": dict(self._job_outputs[n])}
            for n in ex.job.needs
        }
        github = dict(self.context.github)
        github["job"] = ex.job.id
        return self.context.derive(
            github=github,
            matrix=dict(ex.matrix),
            strategy={
                "fail-fast": ex.job.fail_fast,
                "job-index": ex.matrix_index,
                "job-total": ex.matrix_total,
                "max-parallel": ex.job.max_parallel or ex.matrix_total,
            },
            needs=needs,
            runner={"os": _runner_os(ex.job.runs_on), "arch": platform.machine(), "temp": tempfile.gettempdir()},
            job_status=self._dependency_status(ex),
            run_cancelled=self._cancel.is_set(),
        )

    # ---- job execution (worker threads) ----

    def _run_job(self, ex: JobExecution, ctx: Context, token: CancelToken) -> JobResult:
        console = self.runner.console
        job = ex.job
        result = JobResult(key=ex.key, job_id=job.id, state=JobState.RUNNING, matrix=dict(ex.matrix),
                           started_at=time.time())

        def emit(line: str) -> None:
            if line.startswith(ADD_MASK):
                self.masker.add(line[len(ADD_MASK):].strip())
                return
            masked = self.masker.mask(line)
            result.logs.append(masked)
            console.print_log(ex.key, masked)

        console.print_job_start(ex.key)
        steps_ctx: Dict[str, Any] = {}
        job_status = "success"
        file_env: Dict[str, str] = {}
        ctx = ctx.derive(job={"status": "success"}, job_status="success")

        try:
            try:
                env = {k: interpolate(v, ctx) for k, v in self.workflow.env.items()}
                env.update({k: interpolate(v, ctx.derive(env=env)) for k, v in job.env.items()})
            except ExpressionError as e:
                raise JobFailure(ex.key, f"cannot evaluate job env: {e}") from e

            for idx, step in enumerate(job.steps):
                token.check()
                step_ctx = ctx.derive(
                    env={**env, **file_env},
                    steps=dict(steps_ctx),
                    job={"status": job_status},
                    job_status=job_status,
                    run_cancelled=self._cancel.is_set(),
                )
                if not evaluate_condition(step.condition, step_ctx):
                    sr = StepResult(name=step.name, id=step.id, outcome="skipped", conclusion="skipped")
                else:
                    console.print_step(ex.key, step.name)
                    sr = self._run_step(ex, step, idx, step_ctx, env, file_env, emit, token)
                result.steps.append(sr)
                if step.id:
                    steps_ctx[step.id] = {"outputs": dict(sr.outputs), "outcome": sr.outcome, "conclusion": sr.conclusion}
                if sr.conclusion == "failure":
                    job_status = "failure"

            if job_status == "failure":
                result.state = JobState.FAILED
                failed = next(s for s in result.steps if s.conclusion == "failure")
                result.reason = f"step '{failed.name}' failed"
            else:
                result.state = JobState.SUCCEEDED
        except JobTimeout as e:
            result.state = JobState.CANCELLED
            result.reason = "timeout"
            emit(str(e))
        except Cancelled as e:
            result.state = JobState.CANCELLED
            result.reason = e.reason
        except JobFailure as e:
            result.state = JobState.FAILED
            result.reason = self.masker.mask(e.reason)
            emit(str(e))
            console.print_failure(ex.key, result.reason, is_job=True)

        if result.state in (JobState.SUCCEEDED, JobState.FAILED):
            result.outputs = self._job_outputs_for(ex, ctx, steps_ctx, emit)

        if result.state is JobState.FAILED and job.continue_on_error:
            result.state = JobState.SUCCEEDED
            result.reason = "failed (continue-on-error)"

        result.finished_at = time.time()
        return result

    def _job_outputs_for(self, ex: JobExecution, ctx: Context, steps_ctx: Dict[str, Any],
                         emit: Callable[[str], None]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        out_ctx = ctx.derive(steps=dict(steps_ctx))
        for name, expr in ex.job.outputs.items():
            try:
                out[name] = interpolate(expr, out_ctx)
            except ExpressionError as e:
                emit(f"output '{name}' not set: {e}")
        return self.masker.mask_mapping(out)

    def _run_step(
        self,
        ex: JobExecution,
        step: Step,
        idx: int,
        ctx: Context,
        job_env: Dict[str, str],
        file_env: Dict[str, str],
        emit: Callable[[str], None],
        token: CancelToken,
    ) -> StepResult:
        console = self.runner.console
        policy = self.runner.retry
        sr = StepResult(name=step.name, id=step.id, outcome="failure", conclusion="failure")

        for attempt in range(1, policy.max_attempts + 1):
            sr.attempts = attempt
            if attempt > 1:
                pause = policy.delay_before(attempt)
                emit(f"retrying '{step.name}' (attempt {attempt}/{policy.max_attempts}) in {pause:g}s")
                if token.wait(pause):
                    token.check()
            try:
                if step.kind == "run":
                    code, outputs = self._invoke_command(ex, step, ctx, job_env, file_env, emit, token)
                else:
                    code, outputs = self._invoke_action(ex, step, ctx, job_env, file_env, emit, token)
            except ExpressionError as e:
                # unresolved input: fatal to this step, retrying cannot help
                failure = StepFailure(ex.key, step.name, str(e))
                sr.error = self.masker.mask(str(failure))
                emit(sr.error)
                break
            except (LookupError, OSError, ValueError) as e:
                failure = StepFailure(ex.key, step.name, str(e))
                sr.error = self.masker.mask(str(failure))
                emit(sr.error)
                continue

            sr.exit_code = code
            sr.outputs = self.masker.mask_mapping(outputs)
            if code == 0:
                sr.outcome = sr.conclusion = "success"
                sr.error = None
                break
            failure = StepFailure(ex.key, step.name, "non-zero exit status", exit_code=code)
            sr.error = self.masker.mask(str(failure))
            emit(sr.error)

        if sr.outcome == "failure":
            console.print_failure(step.name, sr.error or "failed", exit_code=sr.exit_code)
            if step.continue_on_error:
                sr.conclusion = "success"
                emit(f"step '{step.name}' failed; continuing (continue-on-error)")
        return sr

    def _step_env(self, ex: JobExecution, step: Step, ctx: Context, job_env: Dict[str, str],
                  file_env: Dict[str, str]) -> Dict[str, str]:
        env = {**job_env, **file_env}
        for k, v in step.env.items():
            env[k] = interpolate(v, ctx.derive(env=env))
        return env

    def _invoke_command(self, ex, step, ctx, job_env, file_env, emit, token):
        env = self._step_env(ex, step, ctx, job_env, file_env)
        step_ctx = ctx.derive(env=env)
        command = interpolate(step.run or "", step_ctx)

        defaults = {**self.workflow.defaults.get("run", {}), **ex.job.defaults.get("run", {})}
        shell = step.shell or defaults.get("shell") or default_shell()
        workdir = step.working_directory or defaults.get("working-directory") or "."
        cwd = (self.context.workspace / interpolate(str(workdir), step_ctx)).resolve()

        for line in command.splitlines():
            emit(f"$ {line}")

        with tempfile.TemporaryDirectory(prefix="pipewright-step-") as tmp:
            output_file = Path(tmp) / "output"
            env_file = Path(tmp) / "env"
            output_file.touch()
            env_file.touch()

            proc_env = dict(os.environ)
            proc_env.update(self._platform_env(ex, step_ctx))
            proc_env.update(env)
            proc_env.update({
                "PIPEWRIGHT_OUTPUT": str(output_file),
                "GITHUB_OUTPUT": str(output_file),
                "PIPEWRIGHT_ENV": str(env_file),
                "GITHUB_ENV": str(env_file),
            })

            timeout = step.timeout_minutes * 60 if step.timeout_minutes is not None else None
            request = CommandRequest(command=command, shell=shell, cwd=cwd, env=proc_env, timeout=timeout)
            code = self.runner.command_runner.run(request, emit, token)

            outputs = parse_key_value_file(output_file)
            file_env.update(parse_key_value_file(env_file))
        return code, outputs

    def _invoke_action(self, ex, step, ctx, job_env, file_env, emit, token):
        env = self._step_env(ex, step, ctx, job_env, file_env)
        step_ctx = ctx.derive(env=env)
        inputs = interpolate_value(dict(step.with_), step_ctx)
        emit(f"Run {step.uses}")
        for k, v in inputs.items():
            emit(f"  {k}: {to_string(v)}")
        result = self.runner.actions.invoke(step.uses or "", inputs, step_ctx, token)
        for line in result.logs:
            emit(line)
        return result.status, dict(result.outputs)

    def _platform_env(self, ex: JobExecution, ctx: Context) -> Dict[str, str]:
        gh = ctx.github
        return {
            "CI": "true",
            "PIPEWRIGHT": "true",
            "GITHUB_WORKSPACE": str(ctx.workspace),
            "GITHUB_SHA": str(gh.get("sha", "")),
            "GITHUB_REF": str(gh.get("ref", "")),
            "GITHUB_REF_NAME": str(gh.get("ref_name", "")),
            "GITHUB_EVENT_NAME": str(gh.get("event_name", "")),
            "GITHUB_REPOSITORY": str(gh.get("repository", "")),
            "GITHUB_ACTOR": str(gh.get("actor", "")),
            "GITHUB_RUN_ID": str(gh.get("run_id", "")),
            "GITHUB_RUN_NUMBER": str(gh.get("run_number", "")),
            "GITHUB_WORKFLOW": str(gh.get("workflow", "")),
            "GITHUB_JOB": ex.job.id,
            "RUNNER_OS": str(ctx.runner.get("os", "")),
        }


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

class WorkflowRunner:
    """
    Scheduler + executor.

    - Builds the job DAG (CycleDetected before anything runs).
    - Runs independent jobs concurrently, up to `max_workers` slots
      (None = unbounded).
    - Runs steps of a job strictly in order.
    """

    _ids = itertools.count(1)
    _ids_lock = threading.Lock()

    def __init__(
        self,
        *,
        command_runner: CommandRunner | None = None,
        actions: ActionRegistry | None = None,
        max_workers: int | None = None,
        fail_fast: bool = False,
        skipped_needs_pass: bool = False,
        retry: RetryPolicy | None = None,
        workspace: str | Path = ".",
        secrets: Mapping[str, str] | None = None,
        console: Console | None = None,
        poll_interval: float = 0.05,
    ):
        if max_workers is not None and max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.command_runner = command_runner or ShellCommandRunner()
        self.actions = actions or ActionRegistry()
        self.max_workers = max_workers
        self.fail_fast = fail_fast
        self.skipped_needs_pass = skipped_needs_pass
        self.retry = retry or NO_RETRY
        self.workspace = Path(workspace)
        self.secrets = dict(secrets or {})
        self.console = console or get_console()
        self.poll_interval = poll_interval

    @classmethod
    def next_run_id(cls) -> int:
        with cls._ids_lock:
            return next(cls._ids)

    def start(
        self,
        workflow: Workflow,
        event: Event,
        *,
        inputs: Optional[Mapping[str, Any]] = None,
        run_number: int = 1,
    ) -> Run:
        run = Run(self, workflow, event, run_id=self.next_run_id(), run_number=run_number, inputs=inputs)
        return run.start()

    def run(
        self,
        workflow: Workflow,
        event: Event,
        *,
        inputs: Optional[Mapping[str, Any]] = None,
        timeout: float | None = None,
    ) -> RunResult:
        return self.start(workflow, event, inputs=inputs).wait(timeout)
