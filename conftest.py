"""Shared fixtures: every test gets its own data directory."""

from datetime import datetime, timedelta

import pytest

import config as data_config
from models import Search

NOW = datetime(2026, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    data_dir = tmp_path / "data"
    monkeypatch.setenv(data_config.ENV_DATA_DIR, str(data_dir))
    monkeypatch.setattr(data_config, "CONFIG_FILE", str(tmp_path / "global_config.json"))
    for name in ("SEARCH_SCHEDULER_CONFIG_PATH", "SCHEDULER_LOG_DIR", "SEARCH_API_URL",
                 "SCHEDULER_TICK_INTERVAL_MS", "SCHEDULER_LOG_LEVEL", "SEARCH_API_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(data_config.Config, "_instance", None)
    return data_dir


@pytest.fixture
def now():
    return NOW


def make_search(search_id, enabled=True, **overrides):
    fields = dict(
        id=search_id,
        name=f"search {search_id}",
        start_date=NOW - timedelta(hours=2),
        end_date=NOW + timedelta(hours=10),
        frequency=1.0,
        keywords=["hail", "storm"],
        enabled=enabled,
    )
    fields.update(overrides)
    return Search(**fields)
