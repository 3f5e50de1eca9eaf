"""Tests for the Python workflow helpers."""

from __future__ import annotations

import textwrap

import pytest

from pipewright.dsl import build, job, matrix, on, sh, uses, workflow
from pipewright.errors import ParseError
from pipewright.parser import load_workflow


class TestSteps:
    def test_sh(self):
        step = sh("Test", "pytest -q", id="t", cwd="pkg", env={"N": 2}, if_="success()")
        assert step.kind == "run"
        assert step.working_directory == "pkg"
        assert step.env == {"N": "2"}
        assert step.condition == "success()"

    def test_uses(self):
        step = uses("Comment", "peter-evans/create-or-update-comment@v4", with_={"body": "hi"})
        assert step.kind == "uses"
        assert step.with_ == {"body": "hi"}


class TestJob:
    def test_positional_and_list_steps(self):
        j = job("x", sh("b", "echo b"), steps_list=[sh("a", "echo a")])
        assert [s.name for s in j.steps] == ["a", "b"]

    def test_default_working_directory(self):
        j = job("x", sh("a", "echo a"), sh("b", "echo b", cwd="other"), uses("c", "acme/echo"), cwd="src")
        assert [s.working_directory for s in j.steps] == ["src", "other", None]

    def test_needs_steps(self):
        with pytest.raises(ValueError, match="at least one step"):
            job("empty")

    def test_builder(self):
        j = (
            build("test")
            .named("Unit tests")
            .depends_on("lint")
            .with_env(PY=3)
            .with_matrix(matrix(py=["3.11", "3.12"]), fail_fast=True)
            .define_step("Run", "pytest", id="pytest")
            .with_outputs(result="${{ steps.pytest.outputs.result }}")
            .timeout(10)
            .build()
        )
        assert j.display_name == "Unit tests"
        assert j.needs == ("lint",)
        assert j.env == {"PY": "3"}
        assert j.fail_fast is True
        assert j.matrix.expand() == [{"py": "3.11"}, {"py": "3.12"}]
        assert j.timeout_minutes == 10
        assert j.outputs == {"result": "${{ steps.pytest.outputs.result }}"}

    def test_builder_without_steps(self):
        with pytest.raises(ValueError, match="no steps"):
            build("x").build()


class TestWorkflow:
    def test_round_trips_through_validation(self):
        wf = workflow(
            "ci",
            job("lint", sh("Lint", "ruff check .")),
            job("test", sh("Test", "pytest"), needs=["lint"]),
            on=[on("push", branches=["main"]), on("schedule", crons=["0 3 * * 1"])],
            env={"FORCE_COLOR": 1},
        )
        assert list(wf.jobs) == ["lint", "test"]
        assert wf.env == {"FORCE_COLOR": "1"}
        assert [t.event for t in wf.triggers] == ["push", "schedule"]
        assert wf.triggers_for("schedule")[0].crons == ("0 3 * * 1",)

    def test_single_trigger(self):
        wf = workflow("one", job("a", sh("a", "echo")), on=on("push"))
        assert len(wf.triggers) == 1

    def test_duplicate_job_ids(self):
        with pytest.raises(ValueError, match="duplicate job ids"):
            workflow("dup", job("a", sh("a", "echo")), job("a", sh("b", "echo")), on=on("push"))

    def test_unknown_dependency_rejected(self):
        with pytest.raises(ParseError):
            workflow("bad", job("a", sh("a", "echo"), needs=["missing"]), on=on("push"))

    def test_bad_cron_rejected(self):
        with pytest.raises(ParseError):
            workflow("bad", job("a", sh("a", "echo")), on=on("schedule", crons=["every day"]))


class TestPythonWorkflowFiles:
    def test_workflow_function(self, tmp_path):
        path = tmp_path / "demo_workflow.py"
        path.write_text(textwrap.dedent("""
            from pipewright.dsl import job, on, sh, wf

            def workflow():
                return wf("demo", job("a", sh("A", "echo a")), on=on("push"))
        """), encoding="utf-8")
        assert load_workflow(path).name == "demo"

    def test_constant(self, tmp_path):
        path = tmp_path / "const_workflow.py"
        path.write_text(textwrap.dedent("""
            from pipewright.dsl import job, on, sh, workflow

            WORKFLOW = workflow("const", job("a", sh("A", "echo a")), on=on("push"))
        """), encoding="utf-8")
        assert load_workflow(path).name == "const"

    def test_imported_helper_is_not_a_workflow(self, tmp_path):
        path = tmp_path / "empty_workflow.py"
        path.write_text("from pipewright.dsl import workflow\n", encoding="utf-8")
        with pytest.raises(TypeError):
            load_workflow(path)
