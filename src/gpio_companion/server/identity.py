"""
Board Identity.

Every board sharing a broker listens on exactly one topic: its own identity
token. The token is generated once (uuid4) and persisted in a small YAML
key-value file so it survives restarts; the companion app is configured
with it once and never again.
"""
import logging
import os
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Optional

import yaml

from gpio_companion.server.errors import StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_KEY = "board_identifier"


class BoardIdentity:
    store_path: Path
    key: str
    _token: Optional[str]
    _lock: threading.Lock

    """
    Owns the persisted board identity token.

    A single instance is created by the composition root and handed to the
    ConnectionManager and CommandDispatcher.
    """
    def __init__(self, store_path: str | os.PathLike, key: str = DEFAULT_KEY):
        self.store_path = Path(store_path)
        self.key = key
        self._token = None
        self._lock = threading.Lock()

    def get_or_create(self) -> str:
        """
        Returns the board token, generating and persisting one on first use.

        Raises StorageUnavailable if the store cannot be read or written.
        """
        if self._token is not None:
            return self._token

        with self._lock:
            if self._token is not None:
                return self._token

            records = self._read_records()
            existing = records.get(self.key)
            if isinstance(existing, str) and existing.strip():
                self._token = existing.strip()
                logger.debug(f"Retrieved the board identifier from {self.store_path}: {self._token}")
                return self._token

            token = str(uuid.uuid4())
            records[self.key] = token
            self._write_records(records)
            self._token = token
            logger.info(f"Generated a new board identifier and stored it in {self.store_path}: {token}")
            return token

    def _read_records(self) -> dict:
        try:
            with open(self.store_path, "r") as f:
                records = yaml.safe_load(f) or {}
        except FileNotFoundError:
            return {}
        except (OSError, yaml.YAMLError) as e:
            raise StorageUnavailable(f"Cannot read board identity from {self.store_path}: {e}") from e
        if not isinstance(records, dict):
            raise StorageUnavailable(f"Board identity store {self.store_path} is not a key-value mapping")
        return records

    def _write_records(self, records: dict):
        # Temp file must live in the same directory for os.replace to be atomic.
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.store_path.parent, prefix=".board-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    yaml.safe_dump(records, f, default_flow_style=False)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self.store_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, yaml.YAMLError) as e:
            raise StorageUnavailable(f"Cannot write board identity to {self.store_path}: {e}") from e
