from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


def _flag(value: str | None, default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    workflows_dir: Path = Path(".github/workflows")
    workspace: Path = Path(".")
    max_workers: int | None = None
    strict: bool = False
    skipped_needs_pass: bool = False
    poll_seconds: float = 30.0
    default_ref: str = "refs/heads/main"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        workers = env.get("PIPEWRIGHT_MAX_WORKERS")
        return cls(
            workflows_dir=Path(env.get("PIPEWRIGHT_WORKFLOWS_DIR", ".github/workflows")),
            workspace=Path(env.get("PIPEWRIGHT_WORKSPACE", ".")),
            max_workers=int(workers) if workers else None,
            strict=_flag(env.get("PIPEWRIGHT_STRICT")),
            skipped_needs_pass=_flag(env.get("PIPEWRIGHT_SKIPPED_NEEDS_PASS")),
            poll_seconds=float(env.get("PIPEWRIGHT_POLL_SECONDS", "30")),
            default_ref=env.get("PIPEWRIGHT_DEFAULT_REF", "refs/heads/main"),
        )
