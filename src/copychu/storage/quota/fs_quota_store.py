from __future__ import annotations

from contextlib import contextmanager
import json
import logging
import os
from pathlib import Path
import tempfile
import time
from typing import Any

logger = logging.getLogger("copychu.storage.quota")


@contextmanager
def file_lock(lock_path: str | Path, timeout_s: float = 10.0, poll_s: float = 0.05):
    """
    Cross-platform exclusive file lock:
      - Windows: msvcrt.locking
      - Unix: fcntl.flock

    Serializes writers of the quota record, whether they live in this process
    (threads) or in separate stage processes.
    """
    lp = Path(lock_path)
    lp.parent.mkdir(parents=True, exist_ok=True)
    f = open(lp, "a+")  # noqa: SIM115 # keep handle open to hold the lock

    start = time.monotonic()
    while True:
        try:
            if os.name == "nt":
                import msvcrt  # type: ignore

                # lock 1 byte
                f.seek(0)
                msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl  # type: ignore

                fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except OSError as e:
            if time.monotonic() - start > timeout_s:
                f.close()
                raise TimeoutError(f"Timed out acquiring quota lock: {lp}") from e
            time.sleep(poll_s)

    try:
        yield
    finally:
        try:
            if os.name == "nt":
                import msvcrt  # type: ignore

                f.seek(0)
                msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl  # type: ignore

                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        finally:
            f.close()


class FSQuotaStore:
    """
    JSON quota record on the local filesystem.

    Layout (readable by non-Python workers too):
      {"date", "callCount", "limit", "remaining", "perFunctionCounts",
       "callHistory", "lastUpdated"}

    Writes go to a temp file in the same directory followed by os.replace, so a
    reader sees either the previous record or the new one, never a partial one.
    """

    def __init__(self, path: str | Path, *, lock_timeout_s: float = 10.0):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._lock_timeout_s = lock_timeout_s

    @contextmanager
    def locked(self):
        with file_lock(self.lock_path, timeout_s=self._lock_timeout_s):
            yield

    def read(self) -> dict[str, Any] | None:
        """Return the stored record, or None when missing or unreadable."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Quota record %s is not valid JSON; starting a fresh record", self.path)
            return None
        if not isinstance(data, dict):
            logger.warning("Quota record %s has unexpected shape; starting a fresh record", self.path)
            return None
        return data

    def write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=self.path.name + ".", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise
