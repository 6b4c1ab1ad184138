from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from ..utils import get_user_settings_dir, load_config, save_config

logger = logging.getLogger(__name__)

STORE_FILENAME = "opds_credentials.json"
LEGACY_CONFIG_KEY = "opds_credentials"


@dataclass(frozen=True)
class Credential:
    username: str
    password: str


@dataclass(frozen=True)
class StoredCredential(Credential):
    host: str

    def to_dict(self) -> Dict[str, str]:
        return {"host": self.host, "username": self.username, "password": self.password}


def normalize_host(value: str) -> str:
    """Reduce a host, ``host:port`` or full URL to a lowercase hostname."""
    text = (value or "").strip()
    if not text:
        return ""
    parsed = urlparse(text if "//" in text else f"//{text}")
    return (parsed.hostname or "").lower().rstrip(".")


class CredentialStore:
    """Host-keyed Basic credentials persisted as JSON in the settings directory."""

    def __init__(self, path: Optional[Union[str, Path]] = None) -> None:
        self._path = Path(path) if path else None
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        if self._path is None:
            self._path = Path(get_user_settings_dir()) / STORE_FILENAME
        return self._path

    def _read(self) -> Dict[str, Dict[str, str]]:
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable credential store %s: %s", self.path, exc)
            return {}
        if not isinstance(data, dict):
            return {}
        return {
            host: record
            for host, record in data.items()
            if isinstance(record, dict) and record.get("username") is not None
        }

    def _write(self, records: Dict[str, Dict[str, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_suffix(".tmp")
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(records, handle, indent=2, sort_keys=True)
        os.replace(temp_path, self.path)
        try:
            os.chmod(self.path, 0o600)
        except OSError:
            logger.debug("Unable to restrict permissions on %s", self.path)

    @staticmethod
    def _to_credential(host: str, record: Dict[str, Any]) -> StoredCredential:
        return StoredCredential(
            host=host,
            username=str(record.get("username") or ""),
            password=str(record.get("password") or ""),
        )

    def save_credential(self, host: str, username: str, password: str) -> StoredCredential:
        key = normalize_host(host)
        if not key:
            raise ValueError("A host is required to save catalog credentials")
        with self._lock:
            records = self._read()
            records[key] = {"username": username, "password": password}
            self._write(records)
        logger.debug("Saved catalog credentials for %s", key)
        return StoredCredential(host=key, username=username, password=password)

    def find_credential(self, host: str) -> Optional[StoredCredential]:
        key = normalize_host(host)
        with self._lock:
            record = self._read().get(key)
        return self._to_credential(key, record) if record else None

    def find_credential_for_url(self, url: str) -> Optional[StoredCredential]:
        hostname = normalize_host(url)
        if not hostname:
            return None
        with self._lock:
            records = self._read()
        matches = [
            host
            for host in records
            if host == hostname or hostname.endswith(f".{host}")
        ]
        if not matches:
            return None
        best = max(matches, key=len)
        return self._to_credential(best, records[best])

    def delete_credential(self, host: str) -> bool:
        key = normalize_host(host)
        with self._lock:
            records = self._read()
            if key not in records:
                return False
            del records[key]
            self._write(records)
        return True

    def all_credentials(self) -> List[StoredCredential]:
        with self._lock:
            records = self._read()
        return [self._to_credential(host, records[host]) for host in sorted(records)]

    def migrate_from_config(self) -> int:
        """Move a legacy ``opds_credentials`` list out of ``config.json``.

        Hosts already present in the store are left untouched. Returns the number
        of credentials imported.
        """
        config = load_config()
        legacy = config.get(LEGACY_CONFIG_KEY) if isinstance(config, dict) else None
        if not isinstance(legacy, list):
            return 0
        imported = 0
        with self._lock:
            records = self._read()
            for item in legacy:
                if not isinstance(item, dict):
                    continue
                key = normalize_host(str(item.get("host") or ""))
                if not key or key in records or not item.get("username"):
                    continue
                records[key] = {"username": str(item["username"]), "password": str(item.get("password") or "")}
                imported += 1
            if imported:
                self._write(records)
        config.pop(LEGACY_CONFIG_KEY, None)
        save_config(config)
        logger.info("Migrated %d legacy catalog credential(s)", imported)
        return imported
