import json
import logging
import os
import platform
from functools import lru_cache

from dotenv import load_dotenv, find_dotenv

logger = logging.getLogger(__name__)


def _load_environment() -> None:
    explicit_path = os.environ.get("SHELFWISE_ENV_FILE")
    if explicit_path:
        load_dotenv(explicit_path, override=False)
        return
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)


_load_environment()


def ensure_directory(path):
    resolved = os.path.abspath(os.path.expanduser(str(path)))
    os.makedirs(resolved, exist_ok=True)
    return resolved


@lru_cache(maxsize=1)
def get_user_settings_dir():
    override = os.environ.get("SHELFWISE_SETTINGS_DIR")
    if override:
        return ensure_directory(override)

    data_root = os.environ.get("SHELFWISE_DATA")
    if data_root:
        try:
            return ensure_directory(os.path.join(data_root, "settings"))
        except OSError as exc:
            logger.warning("SHELFWISE_DATA=%s is not writable: %s", data_root, exc)

    from platformdirs import user_config_dir

    if platform.system() != "Windows":
        legacy_dir = os.path.join(os.path.expanduser("~"), ".config", "shelfwise")
        if os.path.exists(legacy_dir):
            return ensure_directory(legacy_dir)

    config_dir = user_config_dir("shelfwise", appauthor=False, roaming=True, ensure_exists=True)
    return ensure_directory(config_dir)


def get_user_config_path():
    return os.path.join(get_user_settings_dir(), "config.json")


def load_config():
    path = get_user_config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def save_config(config):
    path = get_user_config_path()
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
    except OSError as exc:
        logger.warning("Unable to write config %s: %s", path, exc)
