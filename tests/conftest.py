from __future__ import annotations

import pytest

from shelfwise import utils
from shelfwise.settings import _ENV_KEYS


@pytest.fixture(autouse=True)
def isolated_settings_dir(tmp_path, monkeypatch):
    """Point the settings directory at a temp folder and clear catalog env overrides."""
    settings_dir = tmp_path / "settings"
    monkeypatch.setenv("SHELFWISE_SETTINGS_DIR", str(settings_dir))
    for env_key in _ENV_KEYS.values():
        monkeypatch.delenv(env_key, raising=False)
    utils.get_user_settings_dir.cache_clear()
    yield settings_dir
    utils.get_user_settings_dir.cache_clear()
