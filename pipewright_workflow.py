# pipewright_workflow.py
# CI for pipewright itself: lint, then the test suite across Python versions.
from __future__ import annotations
from pipewright.dsl import wf, job, sh, matrix, on

def workflow():
    return wf(
        "pipewright",

        # Lint job - ruff over the package and tests
        job(
            "lint",
            sh("Install ruff", "pip install ruff"),
            sh("Ruff check", "ruff check src tests"),
        ),

        # Test job - one execution per Python version
        job(
            "test",
            sh("Install package", "pip install -e '.[test]'"),
            sh("Run pytest", "pytest -q"),
            needs=["lint"],
            strategy=matrix(python=["3.10", "3.11", "3.12"]),
            fail_fast=True,
            timeout_minutes=20,
            env={"PYTHON_VERSION": "${{ matrix.python }}"},
        ),

        # Validate the bundled example workflows with the CLI itself
        job(
            "examples",
            sh("Validate examples", "pipewright validate examples/workflows/*.yml"),
            needs=["test"],
        ),

        on=[
            on("push", branches=["main"], paths_ignore=["**.md"]),
            on("pull_request", branches=["main"]),
            on("workflow_dispatch"),
        ],
    )
