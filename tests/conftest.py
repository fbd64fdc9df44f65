from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, List

import pytest

from codex_connector.config import Settings
from codex_connector.task.types import CommandTemplate, TaskSpec


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    data_dir = tmp_path / "home"
    data_dir.mkdir(parents=True, exist_ok=True)
    return Settings(
        data_dir=data_dir,
        codex_binary=sys.executable,
        heartbeat_interval_sec=0.05,
        stall_threshold_sec=60.0,
        kill_grace_sec=0.5,
    )


@pytest.fixture
def python_spec(tmp_path: Path) -> Callable[..., TaskSpec]:
    """Build a TaskSpec that runs ``python -c code`` instead of the agent."""

    workdir = tmp_path / "work"
    workdir.mkdir(parents=True, exist_ok=True)

    def _build(code: str, *extra_args: str, timeout_ms: int = 0, prompt: str = "test task") -> TaskSpec:
        args: List[str] = ["-c", code]
        args.extend(extra_args)
        return TaskSpec(
            prompt=prompt,
            working_directory=str(workdir),
            command=CommandTemplate(binary=sys.executable, args=args),
            timeout_ms=timeout_ms,
        )

    return _build
