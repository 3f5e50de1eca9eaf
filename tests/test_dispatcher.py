"""Tests for event routing, manual dispatch and the schedule timer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pipewright.dispatcher import Dispatcher, ScheduleTimer, resolve_inputs
from pipewright.errors import CycleDetected
from pipewright.model import Event, RunStatus
from pipewright.parser import load_workflow

NIGHTLY = Path(__file__).resolve().parent.parent / "examples" / "workflows" / "nightly.yml"


def _dt(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def dispatcher(make_runner, load):
    ci = load("""
        name: ci
        on:
          push:
            branches: [main]
        jobs:
          build:
            steps:
              - run: mark ci
    """)
    docs = load("""
        name: docs
        on:
          push:
            paths: ["docs/**"]
          pull_request:
        jobs:
          build:
            steps:
              - run: mark docs
    """)
    return Dispatcher([ci, docs], make_runner())


class TestDispatch:
    def test_one_run_per_matching_workflow(self, dispatcher):
        runs = dispatcher.dispatch(Event(name="push", ref="refs/heads/main", changed_files=("docs/a.md",)))
        assert sorted(r.workflow.name for r in runs) == ["ci", "docs"]
        for run in runs:
            assert run.wait(10).status is RunStatus.SUCCEEDED
        assert {r.run_id for r in dispatcher.runs} == {r.run_id for r in runs}

    def test_filters_narrow_the_match(self, dispatcher):
        runs = dispatcher.dispatch(Event(name="push", ref="refs/heads/dev", changed_files=("docs/a.md",)))
        assert [r.workflow.name for r in runs] == ["docs"]

    def test_no_match_starts_nothing(self, dispatcher, scripted):
        assert dispatcher.dispatch(Event(name="release", payload={"action": "published"})) == []
        assert scripted.commands == []

    def test_run_numbers_count_per_workflow(self, dispatcher):
        event = Event(name="push", ref="refs/heads/main")
        first = dispatcher.dispatch(event)[0]
        second = dispatcher.dispatch(event)[0]
        assert first.wait(10) and second.wait(10)
        assert first.context.github["run_number"] == "1"
        assert second.context.github["run_number"] == "2"
        assert first.run_id != second.run_id

    def test_get_run(self, dispatcher):
        run = dispatcher.dispatch(Event(name="pull_request", payload={"action": "opened"}))[0]
        assert dispatcher.get_run(run.run_id) is run
        with pytest.raises(KeyError):
            dispatcher.get_run(-1)

    def test_duplicate_workflow_name(self, dispatcher, load):
        with pytest.raises(ValueError, match="already registered"):
            dispatcher.register(load("""
                name: ci
                on: push
                jobs:
                  x:
                    steps:
                      - run: echo
            """))

    def test_cyclic_workflow_rejected(self, dispatcher, load):
        loop = load("""
            name: loop
            on: push
            jobs:
              a:
                needs: b
                steps:
                  - run: mark a
              b:
                needs: a
                steps:
                  - run: mark b
        """)
        with pytest.raises(CycleDetected):
            dispatcher.register(loop)
        assert [wf.name for wf in dispatcher.workflows] == ["ci", "docs"]

    def test_workflow_that_cannot_start_does_not_block_others(self, dispatcher, monkeypatch, capsys):
        start = dispatcher.runner.start

        def start_or_fail(workflow, event, **kwargs):
            if workflow.name == "ci":
                raise CycleDetected(["build", "build"])
            return start(workflow, event, **kwargs)

        monkeypatch.setattr(dispatcher.runner, "start", start_or_fail)
        runs = dispatcher.dispatch(Event(name="push", ref="refs/heads/main", changed_files=("docs/a.md",)))
        assert [r.workflow.name for r in runs] == ["docs"]
        assert runs[0].wait(10).status is RunStatus.SUCCEEDED
        assert "workflow 'ci' not started" in capsys.readouterr().err


class TestManualDispatch:
    @pytest.fixture
    def nightly(self, make_runner, scripted):
        return Dispatcher([load_workflow(NIGHTLY)], make_runner())

    def test_defaults_applied(self, nightly):
        run = nightly.dispatch_manual("Nightly")
        run.wait(10)
        assert run.context.inputs == {"level": "quick"}
        assert run.event.ref == "refs/heads/main"
        assert run.event.payload["workflow"] == "Nightly"

    def test_bare_branch_ref(self, nightly):
        run = nightly.dispatch_manual("Nightly", ref="release", inputs={"level": "full"})
        run.wait(10)
        assert run.event.ref == "refs/heads/release"
        assert run.context.inputs["level"] == "full"

    def test_bad_choice(self, nightly):
        with pytest.raises(ValueError, match="must be one of"):
            nightly.dispatch_manual("Nightly", inputs={"level": "huge"})

    def test_unknown_workflow(self, nightly):
        with pytest.raises(KeyError):
            nightly.dispatch_manual("Weekly")

    def test_workflow_without_manual_trigger(self, dispatcher):
        with pytest.raises(ValueError, match="no workflow_dispatch trigger"):
            dispatcher.dispatch_manual("ci")


class TestResolveInputs:
    DECLARED = {
        "dry-run": {"type": "boolean", "default": False},
        "count": {"type": "number", "required": True},
        "note": {},
    }

    def test_coercion(self):
        assert resolve_inputs(self.DECLARED, {"dry-run": "TRUE", "count": "3"}) == {"dry-run": True, "count": 3}
        assert resolve_inputs(self.DECLARED, {"count": 1.5, "note": 7}) == {
            "dry-run": False, "count": 1.5, "note": "7",
        }

    def test_missing_required(self):
        with pytest.raises(ValueError, match="missing required input 'count'"):
            resolve_inputs(self.DECLARED, {})

    def test_unknown_input(self):
        with pytest.raises(ValueError, match="unexpected inputs"):
            resolve_inputs(self.DECLARED, {"count": 1, "colour": "red"})

    @pytest.mark.parametrize("given", [{"count": "many"}, {"count": 1, "dry-run": "maybe"}])
    def test_bad_types(self, given):
        with pytest.raises(ValueError):
            resolve_inputs(self.DECLARED, given)


class TestScheduleTimer:
    @pytest.fixture
    def nightly(self, make_runner):
        return Dispatcher([load_workflow(NIGHTLY)], make_runner())

    def test_first_tick_only_initialises(self, nightly):
        timer = ScheduleTimer(nightly)
        assert timer.tick(_dt(2024, 1, 1, 0, 0)) == []
        assert timer.last_tick == _dt(2024, 1, 1, 0, 0)

    def test_fires_once_per_day_boundary(self, nightly):
        start = _dt(2024, 1, 1, 0, 30)
        timer = ScheduleTimer(nightly, start=start)
        fired = []
        for i in range(1, 6 * 24 * 3 + 1):
            now = start + timedelta(minutes=10 * i)
            fired.extend((now, run) for run in timer.tick(now))
        assert [now.date().isoformat() for now, _ in fired] == ["2024-01-02", "2024-01-03", "2024-01-04"]
        for _, run in fired:
            assert run.event.name == "schedule"
            assert run.event.payload == {"schedule": "0 0 * * *"}
            assert run.wait(10).status is RunStatus.SUCCEEDED

    def test_missed_boundaries_coalesce(self, nightly):
        timer = ScheduleTimer(nightly, start=_dt(2024, 1, 1, 12, 0))
        runs = timer.tick(_dt(2024, 1, 5, 12, 0))
        assert len(runs) == 1
        runs[0].wait(10)

    def test_clock_going_backwards(self, nightly):
        timer = ScheduleTimer(nightly, start=_dt(2024, 1, 2, 0, 30))
        assert timer.tick(_dt(2024, 1, 1, 23, 0)) == []
        assert timer.last_tick == _dt(2024, 1, 2, 0, 30)

    def test_only_schedule_triggers_fire(self, dispatcher):
        timer = ScheduleTimer(dispatcher, start=_dt(2024, 1, 1))
        assert timer.tick(_dt(2024, 2, 1)) == []

    def test_workflow_that_cannot_start_does_not_stop_the_timer(self, nightly, load, monkeypatch, capsys):
        nightly.register(load("""
            name: cleanup
            on:
              schedule:
                - cron: "0 0 * * *"
            jobs:
              sweep:
                steps:
                  - run: mark sweep
        """))
        start = nightly.runner.start

        def start_or_fail(workflow, event, **kwargs):
            if workflow.name == "Nightly":
                raise CycleDetected(["test", "test"])
            return start(workflow, event, **kwargs)

        monkeypatch.setattr(nightly.runner, "start", start_or_fail)
        timer = ScheduleTimer(nightly, start=_dt(2024, 1, 1, 23, 0))
        runs = timer.tick(_dt(2024, 1, 2, 0, 5))
        assert [r.workflow.name for r in runs] == ["cleanup"]
        assert runs[0].wait(10).status is RunStatus.SUCCEEDED
        assert timer.last_tick == _dt(2024, 1, 2, 0, 5)
        assert "workflow 'Nightly' not started" in capsys.readouterr().err
