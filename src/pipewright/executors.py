# executors.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Mapping, Optional, Protocol

from .context import Context
from .errors import Cancelled, JobTimeout


# ----------------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------------

class CancelToken:
    """
    Cooperative cancellation for one job execution.

    Set by the scheduler (run cancelled, fail-fast sibling) or expired by
    the job's own deadline (timeout-minutes).
    """

    def __init__(self, job: str, deadline: float | None = None, timeout_minutes: float | None = None):
        self.job = job
        self.deadline = deadline
        self.timeout_minutes = timeout_minutes
        self.reason = "cancelled"
        self._event = threading.Event()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def should_stop(self) -> bool:
        return self.cancelled or self.expired

    def check(self) -> None:
        if self.cancelled:
            raise Cancelled(self.job, self.reason)
        if self.expired:
            raise JobTimeout(
                self.job,
                f"timed out after {self.timeout_minutes:g} minutes",
                minutes=self.timeout_minutes or 0.0,
            )

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; True if cancelled meanwhile."""
        return self._event.wait(seconds)


# ----------------------------------------------------------------------
# Command invocation boundary
# ----------------------------------------------------------------------

SHELL_TEMPLATES = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "{0}"],
    "sh": ["sh", "-e", "{0}"],
    "python": [sys.executable, "{0}"],
    "pwsh": ["pwsh", "-command", ". '{0}'"],
}

_SUFFIXES = {"python": ".py", "pwsh": ".ps1"}


def default_shell() -> str:
    return "bash" if shutil.which("bash") else "sh"


@dataclass
class CommandRequest:
    command: str
    shell: str
    cwd: Path
    env: Dict[str, str]
    timeout: float | None = None      # step-level timeout in seconds


class CommandRunner(Protocol):
    def run(self, request: CommandRequest, emit: Callable[[str], None], token: CancelToken) -> int:
        ...


class ShellCommandRunner:
    """Runs `run:` steps as local processes, streaming merged stdout/stderr."""

    poll_interval = 0.05

    def _argv(self, shell: str, script: Path) -> List[str]:
        template = SHELL_TEMPLATES.get(shell)
        if template is None:
            if "{0}" not in shell:
                raise ValueError(f"unsupported shell {shell!r}; use bash, sh, python, pwsh or a template with {{0}}")
            template = shell.split()
        return [part.replace("{0}", str(script)) for part in template]

    def run(self, request: CommandRequest, emit: Callable[[str], None], token: CancelToken) -> int:
        if not request.cwd.is_dir():
            raise FileNotFoundError(f"working directory not found: {request.cwd}")

        fd, script_name = tempfile.mkstemp(prefix="pipewright-", suffix=_SUFFIXES.get(request.shell, ".sh"))
        script = Path(script_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(request.command)
                if not request.command.endswith("\n"):
                    f.write("\n")

            proc = subprocess.Popen(
                self._argv(request.shell, script),
                cwd=str(request.cwd),
                env=request.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                # own process group, so children die with the step
                start_new_session=os.name == "posix",
            )
            reader = threading.Thread(target=self._pump, args=(proc.stdout, emit), daemon=True)
            reader.start()

            started = time.monotonic()
            while True:
                try:
                    code = proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                step_expired = request.timeout is not None and time.monotonic() - started >= request.timeout
                if token.should_stop() or step_expired:
                    self._kill(proc)
                    reader.join(timeout=5)
                    if step_expired and not token.should_stop():
                        emit(f"step timed out after {request.timeout:g}s")
                        return 124
                    token.check()
            reader.join(timeout=5)
            return code
        finally:
            script.unlink(missing_ok=True)

    @staticmethod
    def _pump(stream: IO[str], emit: Callable[[str], None]) -> None:
        with stream:
            for line in stream:
                emit(line.rstrip("\r\n"))

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        if os.name == "posix":
            try:
                os.killpg(proc.pid, sig)
                return
            except ProcessLookupError:
                return
        proc.send_signal(sig)

    def _kill(self, proc: subprocess.Popen) -> None:
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self._signal(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
            proc.wait()


# ----------------------------------------------------------------------
# Action invocation boundary
# ----------------------------------------------------------------------

@dataclass
class ActionResult:
    status: int = 0
    outputs: Dict[str, str] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)


ActionFn = Callable[[Mapping[str, Any], Context], Optional[ActionResult]]


class ActionRegistry:
    """
    Maps action references to Python callables.

    `register("peter-evans/create-or-update-comment", fn)` serves every
    version of that action; registering `owner/name@v4` pins one version.
    The engine never implements actions itself.
    """

    def __init__(self) -> None:
        self._actions: Dict[str, ActionFn] = {}

    def register(self, ref: str, fn: ActionFn) -> None:
        self._actions[ref.lower()] = fn

    def action(self, ref: str):
        """Decorator form of `register`."""
        def deco(fn: ActionFn) -> ActionFn:
            self.register(ref, fn)
            return fn
        return deco

    def resolve(self, ref: str) -> ActionFn | None:
        key = ref.lower()
        if key in self._actions:
            return self._actions[key]
        return self._actions.get(key.split("@", 1)[0])

    def __contains__(self, ref: str) -> bool:
        return self.resolve(ref) is not None

    def invoke(self, ref: str, inputs: Mapping[str, Any], ctx: Context, token: CancelToken) -> ActionResult:
        fn = self.resolve(ref)
        if fn is None:
            raise LookupError(f"no action runner registered for '{ref}'")
        token.check()
        result = fn(inputs, ctx)
        token.check()
        return result if result is not None else ActionResult()


# ----------------------------------------------------------------------
# Step file commands
# ----------------------------------------------------------------------

def parse_key_value_file(path: Path) -> Dict[str, str]:
    """
    Parse an output / env file written by a step.

        name=value
        name<<DELIMITER
        multi-line value
        DELIMITER
    """
    if not path.exists():
        return {}
    out: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            key, delim = line.split("<<", 1)
            body: List[str] = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            if i >= len(lines):
                raise ValueError(f"unterminated heredoc for '{key}' in {path.name}")
            i += 1  # skip delimiter
            out[key.strip()] = "\n".join(body)
        elif "=" in line:
            key, value = line.split("=", 1)
            out[key.strip()] = value
        else:
            raise ValueError(f"invalid line in {path.name}: {line!r}")
    return out
