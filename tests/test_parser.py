"""Tests for parsing workflow documents into Workflow objects."""

from __future__ import annotations

from pathlib import Path

import pytest

from pipewright.errors import ParseError, UnknownJob
from pipewright.parser import dump_workflow, load_workflow, load_workflows, parse_workflow

EXAMPLES = Path(__file__).resolve().parent.parent / "examples" / "workflows"

BASIC = """
name: CI
on:
  push:
    branches: [main]
  pull_request:
env:
  GREETING: hello
jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - name: Compile
        id: compile
        run: make all
        env:
          CC: gcc
  test:
    needs: build
    if: github.ref == 'refs/heads/main'
    strategy:
      fail-fast: true
      max-parallel: 2
      matrix:
        os: [linux, mac]
        py: ["3.11", "3.12"]
    steps:
      - run: pytest
        continue-on-error: true
        timeout-minutes: 5
"""


class TestParseWorkflow:
    def test_basic_document(self, load):
        wf = load(BASIC)
        assert wf.name == "CI"
        assert [t.event for t in wf.triggers] == ["push", "pull_request"]
        assert wf.triggers[0].branches == ("main",)
        assert wf.env == {"GREETING": "hello"}
        assert list(wf.jobs) == ["build", "test"]

        build = wf.jobs["build"]
        assert [s.kind for s in build.steps] == ["uses", "run"]
        assert build.steps[0].name == "actions/checkout@v4"
        assert build.steps[1].id == "compile"
        assert build.steps[1].env == {"CC": "gcc"}

        test = wf.jobs["test"]
        assert test.needs == ("build",)
        assert test.condition == "github.ref == 'refs/heads/main'"
        assert test.fail_fast is True
        assert test.max_parallel == 2
        assert len(test.matrix.expand()) == 4
        assert test.steps[0].continue_on_error is True
        assert test.steps[0].timeout_minutes == 5.0
        assert test.steps[0].name == "Run pytest"

    def test_bare_on_key_read_as_boolean(self):
        wf = parse_workflow({True: "push", "jobs": {"a": {"steps": [{"run": "true"}]}}})
        assert wf.triggers[0].event == "push"

    @pytest.mark.parametrize(
        "on, events",
        [
            ("push", ["push"]),
            (["push", "issues"], ["push", "issues"]),
            ({"issues": {"types": ["opened"]}}, ["issues"]),
        ],
    )
    def test_trigger_forms(self, on, events):
        wf = parse_workflow({"on": on, "jobs": {"a": {"steps": [{"run": "true"}]}}})
        assert [t.event for t in wf.triggers] == events

    def test_schedule_and_dispatch_triggers(self, load):
        wf = load("""
            on:
              schedule:
                - cron: "0 0 * * *"
                - cron: "30 6 * * MON-FRI"
              workflow_dispatch:
                inputs:
                  level:
                    type: choice
                    options: [quick, full]
                    default: quick
            jobs:
              a:
                steps:
                  - run: "true"
        """)
        schedule, dispatch = wf.triggers
        assert schedule.crons == ("0 0 * * *", "30 6 * * MON-FRI")
        assert dispatch.inputs["level"]["default"] == "quick"

    def test_name_defaults_to_source(self):
        wf = parse_workflow("on: push\njobs:\n  a:\n    steps:\n      - run: x\n", source="ci.yml")
        assert wf.name == "ci.yml"


class TestParseErrors:
    def _doc(self, job=None, **top):
        doc = {"on": "push", "jobs": {"a": job or {"steps": [{"run": "true"}]}}}
        doc.update(top)
        return doc

    def test_step_without_run_or_uses(self):
        with pytest.raises(ParseError) as exc:
            parse_workflow(self._doc({"steps": [{"name": "nothing"}]}))
        assert exc.value.path == "jobs.a.steps[0]"

    def test_step_with_run_and_uses(self):
        with pytest.raises(ParseError, match="both"):
            parse_workflow(self._doc({"steps": [{"run": "x", "uses": "y/z@v1"}]}))

    def test_job_without_steps(self):
        with pytest.raises(ParseError) as exc:
            parse_workflow(self._doc({"runs-on": "ubuntu-latest"}))
        assert exc.value.path == "jobs.a.steps"

    def test_unknown_dependency(self):
        with pytest.raises(UnknownJob) as exc:
            parse_workflow(self._doc({"needs": ["ghost"], "steps": [{"run": "x"}]}))
        assert exc.value.path == "jobs.a.needs"
        assert "ghost" in str(exc.value)

    def test_empty_matrix_axis(self):
        job = {"strategy": {"matrix": {"os": []}}, "steps": [{"run": "x"}]}
        with pytest.raises(ParseError) as exc:
            parse_workflow(self._doc(job))
        assert exc.value.path == "jobs.a.strategy.matrix.os"

    def test_dynamic_matrix_rejected(self):
        job = {"strategy": {"matrix": "${{ fromJSON(needs.a.outputs.m) }}"}, "steps": [{"run": "x"}]}
        with pytest.raises(ParseError, match="dynamic"):
            parse_workflow(self._doc(job))

    def test_malformed_expression(self):
        with pytest.raises(ParseError) as exc:
            parse_workflow(self._doc({"steps": [{"run": "echo ${{ github.ref == }}"}]}))
        assert exc.value.path == "jobs.a.steps[0].run"

    def test_malformed_condition(self):
        with pytest.raises(ParseError) as exc:
            parse_workflow(self._doc({"if": "success( &&", "steps": [{"run": "x"}]}))
        assert exc.value.path == "jobs.a.if"

    def test_invalid_cron(self):
        with pytest.raises(ParseError) as exc:
            parse_workflow(self._doc(on={"schedule": [{"cron": "61 * * * *"}]}))
        assert "on.schedule[0].cron" in str(exc.value)

    def test_branches_and_branches_ignore(self):
        with pytest.raises(ParseError, match="cannot be combined"):
            parse_workflow(self._doc(on={"push": {"branches": ["a"], "branches-ignore": ["b"]}}))

    def test_duplicate_step_ids(self):
        job = {"steps": [{"id": "x", "run": "a"}, {"id": "x", "run": "b"}]}
        with pytest.raises(ParseError, match="duplicate step id"):
            parse_workflow(self._doc(job))

    def test_missing_trigger(self):
        with pytest.raises(ParseError) as exc:
            parse_workflow({"jobs": {"a": {"steps": [{"run": "x"}]}}})
        assert exc.value.path == "on"

    def test_invalid_yaml(self):
        with pytest.raises(ParseError, match="invalid YAML"):
            parse_workflow("on: [push\njobs: {")

    def test_unknown_keys_warn_or_fail(self, console):
        doc = self._doc({"steps": [{"run": "x", "colour": "blue"}]})
        wf = parse_workflow(doc)
        assert wf.warnings == ("jobs.a.steps[0].colour: unknown key ignored",)
        with pytest.raises(ParseError) as exc:
            parse_workflow(doc, strict=True)
        assert exc.value.path == "jobs.a.steps[0].colour"


class TestRoundTrip:
    def test_step_order_survives_dump_and_parse(self, load):
        wf = load(BASIC)
        again = parse_workflow(dump_workflow(wf))
        assert list(again.jobs) == list(wf.jobs)
        for job_id, job in wf.jobs.items():
            assert [s.name for s in again.jobs[job_id].steps] == [s.name for s in job.steps]
            assert again.jobs[job_id].needs == job.needs
        assert again.jobs["test"].matrix.expand() == wf.jobs["test"].matrix.expand()


class TestLoading:
    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / "ci.yaml"
        path.write_text("on: push\njobs:\n  a:\n    steps:\n      - run: echo hi\n")
        wf = load_workflow(path)
        assert wf.source == str(path)
        assert list(wf.jobs) == ["a"]

    def test_load_python_workflow(self, tmp_path):
        path = tmp_path / "demo_workflow.py"
        path.write_text(
            "from pipewright.dsl import wf, job, sh, on\n"
            "\n"
            "def workflow():\n"
            "    return wf('demo', job('a', sh('Say', 'echo hi')), on=on('push'))\n"
        )
        wf = load_workflow(path)
        assert wf.name == "demo"

    def test_python_module_without_workflow(self, tmp_path):
        path = tmp_path / "empty_workflow.py"
        path.write_text("from pipewright.dsl import workflow\n")
        with pytest.raises(TypeError):
            load_workflow(path)

    def test_unsupported_suffix(self, tmp_path):
        path = tmp_path / "ci.json"
        path.write_text("{}")
        with pytest.raises(ValueError):
            load_workflow(path)

    def test_load_directory_sorted(self, tmp_path):
        for name in ("b.yml", "a.yaml"):
            (tmp_path / name).write_text(f"name: {name}\non: push\njobs:\n  j:\n    steps:\n      - run: x\n")
        (tmp_path / "notes.txt").write_text("ignored")
        assert [wf.name for wf in load_workflows(tmp_path)] == ["a.yaml", "b.yml"]

    def test_bundled_examples_parse(self):
        workflows = load_workflows(EXAMPLES, strict=True)
        names = {wf.name for wf in workflows}
        assert "Comment on new issues" in names
        issue = next(wf for wf in workflows if wf.name == "Comment on new issues")
        assert issue.triggers[0].types == ("opened",)
        assert issue.jobs["comment"].steps[0].uses == "peter-evans/create-or-update-comment@v4"
