"""Tests for environment configuration and git helpers."""

from __future__ import annotations

from pathlib import Path

import pytest

from pipewright.git import local_facts, repository_name
from pipewright.settings import Settings


def test_settings_defaults():
    s = Settings.from_env({})
    assert s.workflows_dir == Path(".github/workflows")
    assert s.max_workers is None
    assert s.strict is False
    assert s.default_ref == "refs/heads/main"


def test_settings_from_env():
    s = Settings.from_env({
        "PIPEWRIGHT_WORKFLOWS_DIR": "ci",
        "PIPEWRIGHT_MAX_WORKERS": "4",
        "PIPEWRIGHT_STRICT": "yes",
        "PIPEWRIGHT_SKIPPED_NEEDS_PASS": "1",
        "PIPEWRIGHT_POLL_SECONDS": "5",
        "PIPEWRIGHT_DEFAULT_REF": "refs/heads/trunk",
    })
    assert s == Settings(
        workflows_dir=Path("ci"),
        max_workers=4,
        strict=True,
        skipped_needs_pass=True,
        poll_seconds=5.0,
        default_ref="refs/heads/trunk",
    )


@pytest.mark.parametrize(
    "url, expected",
    [
        ("git@github.com:acme/widgets.git", "acme/widgets"),
        ("https://github.com/acme/widgets", "acme/widgets"),
        ("https://github.com/acme/widgets.git/", "acme/widgets"),
        ("", ""),
    ],
)
def test_repository_name(url, expected):
    assert repository_name(url) == expected


def test_local_facts_outside_repository(tmp_path, monkeypatch):
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path.parent))
    assert local_facts(tmp_path) == {}
