from __future__ import annotations

from pathlib import Path

import pytest

from bubbox.config import Settings


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        home=tmp_path / "home",
        worker_timeout_seconds=5.0,
        round_timeout_seconds=2.0,
        close_grace_seconds=0.5,
        kill_grace_seconds=0.5,
        launch_check_seconds=0.05,
        poll_interval_seconds=0.01,
    )
