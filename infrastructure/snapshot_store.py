"""File-backed persistence for the hierarchy cache snapshot.

One JSON blob per fixed cache key under the cache directory. Writes go
through a temp file + os.replace so readers never see a torn snapshot.
"""

import errno
import json
import logging
import os
import tempfile
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from core.errors import QuotaExceeded

logger = logging.getLogger("taskscope.cache")

CACHE_KEY = "assigned_hierarchy"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024


class FileSnapshotStore:
    def __init__(self, cache_dir: Path, key: str = CACHE_KEY, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        if not key or "/" in key or "\\" in key or ".." in key:
            raise ValueError(f"Invalid cache key: {key!r}")
        self.cache_dir = Path(cache_dir)
        self.key = key
        self.max_bytes = max_bytes
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self.cache_dir / f"{self.key}.json"

    def load(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            if not self.path.exists():
                return None
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError, UnicodeDecodeError) as exc:
                logger.warning("Unreadable cache file %s: %s", self.path, exc)
                return None
        return data if isinstance(data, dict) else None

    def save(self, payload: Dict[str, Any]) -> None:
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        size = len(text.encode("utf-8"))
        if self.max_bytes and size > self.max_bytes:
            raise QuotaExceeded(f"snapshot is {size} bytes, quota is {self.max_bytes}")
        with self._lock:
            tmp_path: Optional[Path] = None
            try:
                self.cache_dir.mkdir(parents=True, exist_ok=True)
                with tempfile.NamedTemporaryFile(
                    mode="w",
                    encoding="utf-8",
                    delete=False,
                    dir=str(self.cache_dir),
                    prefix=f".{self.key}.",
                    suffix=".tmp",
                ) as tmp:
                    tmp_path = Path(tmp.name)
                    tmp.write(text)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(str(tmp_path), str(self.path))
                tmp_path = None
            except OSError as exc:
                if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                    raise QuotaExceeded(f"no space left for snapshot: {exc}") from exc
                raise QuotaExceeded(f"snapshot write failed: {exc}") from exc
            finally:
                if tmp_path is not None and tmp_path.exists():
                    try:
                        tmp_path.unlink()
                    except OSError:
                        pass

    def clear(self) -> None:
        with self._lock:
            try:
                self.path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Unable to evict cache file %s: %s", self.path, exc)


__all__ = ["FileSnapshotStore", "CACHE_KEY", "DEFAULT_MAX_BYTES"]
