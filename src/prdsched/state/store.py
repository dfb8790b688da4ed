from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from prdsched.state.session import Session

logger = logging.getLogger(__name__)


class SessionStoreError(RuntimeError):
    """Raised when session persistence fails."""


class SessionStore:
    SCHEMA_VERSION = 1

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_name(f"{path.name}.lock")

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _lock_is_stale(self) -> bool:
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        try:
            os.kill(owner, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale():
                    logger.warning("[session] Removing stale lock %s", self.lock_file)
                    self.lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > timeout_seconds:
                    raise SessionStoreError("Timed out waiting for session lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self) -> Any:
        if not self.path.exists():
            return None
        try:
            return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("[session] Cannot read %s: %s", self.path, exc)
            return None

    def _write_raw_json(self, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=".session-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise SessionStoreError(f"Cannot write session to {self.path}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data"),
            }

        # Bare session objects written before the envelope existed.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0 if raw_payload is None else 1,
            "updated_at": self._utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw_json())

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Session | None:
        data = self.get_envelope().get("data")
        if data is None:
            return None
        if not isinstance(data, dict):
            logger.warning("[session] Ignoring malformed session in %s", self.path)
            return None
        try:
            return Session.from_dict(data)
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("[session] Ignoring invalid session in %s: %s", self.path, exc)
            return None

    def save(self, session: Session) -> int:
        with self._state_lock():
            revision = int(self.get_envelope().get("revision", 0)) + 1
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": self._utcnow_iso(),
                "data": session.to_dict(),
            }
            self._write_raw_json(envelope)
        return revision

    def delete(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            raise SessionStoreError(f"Cannot delete session {self.path}: {exc}") from exc
