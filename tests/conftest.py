"""Shared fixtures: a scripted command runner and quiet console."""

from __future__ import annotations

import textwrap
import threading
import time
from pathlib import Path

import pytest

from pipewright.executors import ActionRegistry, ActionResult
from pipewright.model import Event
from pipewright.parser import parse_workflow
from pipewright.runner import WorkflowRunner
from pipewright.ui.console import Console, set_console


class ScriptedRunner:
    """
    CommandRunner double. Each command line is one instruction:

        echo TEXT        emit TEXT
        fail [CODE]      return CODE (default 1)
        sleep SECONDS    wait, honouring cancellation
        output K=V       append to the step output file
        setenv K=V       append to the step env file
        mark NAME        record NAME in `marks` (execution order)
        printenv NAME    emit the value of NAME from the step environment
    """

    def __init__(self):
        self.commands: list[str] = []
        self.marks: list[str] = []
        self.envs: list[dict] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, request, emit, token):
        with self._lock:
            self.commands.append(request.command)
            self.envs.append(dict(request.env))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            for line in request.command.splitlines():
                verb, _, arg = line.strip().partition(" ")
                if verb == "echo":
                    emit(arg)
                elif verb == "fail":
                    return int(arg or 1)
                elif verb == "sleep":
                    end = time.monotonic() + float(arg)
                    while time.monotonic() < end:
                        if token.should_stop():
                            token.check()
                        time.sleep(0.01)
                elif verb in ("output", "setenv"):
                    target = "PIPEWRIGHT_OUTPUT" if verb == "output" else "PIPEWRIGHT_ENV"
                    with open(request.env[target], "a", encoding="utf-8") as f:
                        f.write(arg + "\n")
                elif verb == "mark":
                    with self._lock:
                        self.marks.append(arg)
                elif verb == "printenv":
                    emit(request.env.get(arg, ""))
            return 0
        finally:
            with self._lock:
                self.active -= 1


@pytest.fixture(autouse=True)
def console():
    c = Console(show_logs=False)
    set_console(c)
    return c


@pytest.fixture
def scripted():
    return ScriptedRunner()


@pytest.fixture
def actions():
    registry = ActionRegistry()

    @registry.action("acme/echo")
    def echo(inputs, ctx):
        return ActionResult(outputs={k: str(v) for k, v in inputs.items()}, logs=[f"echo {dict(inputs)}"])

    @registry.action("acme/fail")
    def fail(inputs, ctx):
        return ActionResult(status=1, logs=["boom"])

    return registry


@pytest.fixture
def make_runner(scripted, actions, tmp_path, console):
    def factory(**kwargs):
        kwargs.setdefault("command_runner", scripted)
        kwargs.setdefault("actions", actions)
        kwargs.setdefault("workspace", tmp_path)
        kwargs.setdefault("console", console)
        kwargs.setdefault("poll_interval", 0.01)
        return WorkflowRunner(**kwargs)
    return factory


@pytest.fixture
def load():
    """Parse an indented YAML snippet."""
    def parse(text: str, **kwargs):
        return parse_workflow(textwrap.dedent(text), **kwargs)
    return parse


@pytest.fixture
def push_event():
    return Event(
        name="push",
        payload={"ref": "refs/heads/main", "after": "abc123", "repository": {"full_name": "acme/widgets"}},
    )


@pytest.fixture
def workspace(tmp_path) -> Path:
    return tmp_path
