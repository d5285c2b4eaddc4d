from pathlib import Path

import pytest

from agentgate.config import get_settings

_ENV_KEYS = (
    "APP_ENV",
    "DATA_DIR",
    "WORKSPACE_DIR",
    "MEMORY_BACKEND",
    "HEARTBEAT_ENABLED",
    "WEBHOOK_SECRET",
    "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_ALLOWED_USERS",
    "FALLBACK_BASE_URL",
    "AUTONOMY_FORBIDDEN_PATHS",
)


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("APP_ENV", "dev")
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("WORKSPACE_DIR", str(tmp_path / "workspace"))
    monkeypatch.setenv("MEMORY_BACKEND", "none")
    monkeypatch.setenv("HEARTBEAT_ENABLED", "0")
    # tmp_path lives under /tmp on most systems; keep it out of the deny-list
    monkeypatch.setenv("AUTONOMY_FORBIDDEN_PATHS", "/etc,/root/.ssh,~/.ssh,~/.aws")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()

