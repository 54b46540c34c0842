"""
State store backends

Durable key-value save/restore used for engine snapshots. Values are
JSON-safe dicts; every backend wraps its own failures in StorageError.
"""

import copy
import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import redis

from .config import StorageConfig
from .errors import StorageError

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Abstract key-value store for snapshots"""

    @abstractmethod
    def save(self, key: str, value: dict[str, Any]) -> None:
        """Persist a value under a key, replacing any previous value"""

    @abstractmethod
    def load(self, key: str) -> Optional[dict[str, Any]]:
        """Load a value, or None when nothing is stored under the key"""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key; returns True if it existed"""

    def exists(self, key: str) -> bool:
        return self.load(key) is not None

    def close(self) -> None:
        """Release backend resources"""
        return None


class MemoryStateStore(StateStore):
    """In-process store, mainly for tests and single-run tooling"""

    def __init__(self):
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def save(self, key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def load(self, key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None


class FileStateStore(StateStore):
    """One JSON file per key under a directory"""

    def __init__(self, storage_dir: str = ".opsguard_state"):
        self.storage_dir = Path(storage_dir)

    def _get_key_file(self, key: str) -> Path:
        key_hash = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
        return self.storage_dir / f"state_{key_hash}.json"

    def save(self, key: str, value: dict[str, Any]) -> None:
        key_file = self._get_key_file(key)
        tmp_file = key_file.with_suffix(".json.tmp")
        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_file, "w", encoding="utf-8") as f:
                json.dump({"key": key, "value": value}, f, indent=2, ensure_ascii=False)
            tmp_file.replace(key_file)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Failed to save state {key} to {key_file}: {e}") from e

        logger.debug(f"Saved state {key} to {key_file}")

    def load(self, key: str) -> Optional[dict[str, Any]]:
        key_file = self._get_key_file(key)
        if not key_file.exists():
            return None

        try:
            with open(key_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Failed to load state {key} from {key_file}: {e}") from e

        logger.debug(f"Loaded state {key} from {key_file}")
        return data.get("value")

    def delete(self, key: str) -> bool:
        key_file = self._get_key_file(key)
        try:
            key_file.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete state {key}: {e}") from e
        return True


class RedisStateStore(StateStore):
    """
    Redis-backed store

    Values are stored as JSON strings under ``opsguard:state:<key>``.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        client: Optional[redis.Redis] = None,
        socket_timeout: float = 5.0,
    ):
        """
        Initialize Redis store

        Args:
            url: Redis connection URL
            client: Pre-built client to use instead of connecting to ``url``
            socket_timeout: Socket timeout in seconds
        """
        self.url = url
        self.client = client or redis.Redis.from_url(
            url,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self.key_prefix = "opsguard:state:"

    def _make_redis_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def save(self, key: str, value: dict[str, Any]) -> None:
        try:
            payload = json.dumps(value, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StorageError(f"Failed to serialize state {key}: {e}") from e

        try:
            self.client.set(self._make_redis_key(key), payload.encode("utf-8"))
        except redis.RedisError as e:
            raise StorageError(f"Redis save failed for {key}: {e}") from e

    def load(self, key: str) -> Optional[dict[str, Any]]:
        try:
            data = self.client.get(self._make_redis_key(key))
        except redis.RedisError as e:
            raise StorageError(f"Redis load failed for {key}: {e}") from e

        if data is None:
            return None

        if isinstance(data, bytes):
            data = data.decode("utf-8")
        try:
            return json.loads(data)
        except ValueError as e:
            raise StorageError(f"Corrupt state stored under {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(self._make_redis_key(key)))
        except redis.RedisError as e:
            raise StorageError(f"Redis delete failed for {key}: {e}") from e

    def close(self) -> None:
        try:
            self.client.close()
        except redis.RedisError as e:
            logger.warning(f"Error closing Redis connection: {e}")


def create_store(config: StorageConfig) -> StateStore:
    """Build the state store selected by the storage configuration"""
    if config.backend == "file":
        return FileStateStore(config.path)
    if config.backend == "redis":
        return RedisStateStore(config.redis_url)
    return MemoryStateStore()
