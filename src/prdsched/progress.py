from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 1024 * 1024
DEFAULT_BACKUPS = 2


class ProgressLog:
    """Append-only, human-readable progress file with size-based rotation.

    Write failures are logged and dropped; progress reporting must never stop
    a scheduling run.
    """

    def __init__(
        self,
        path: Path,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backups: int = DEFAULT_BACKUPS,
    ) -> None:
        self.path = path
        self.max_bytes = max_bytes
        self.backups = max(0, backups)

    def _backup_path(self, number: int) -> Path:
        return self.path.with_name(f"{self.path.name}.{number}")

    def _rotate(self) -> None:
        if self.backups == 0:
            self.path.unlink(missing_ok=True)
            return
        self._backup_path(self.backups).unlink(missing_ok=True)
        for number in range(self.backups - 1, 0, -1):
            source = self._backup_path(number)
            if source.exists():
                source.replace(self._backup_path(number + 1))
        self.path.replace(self._backup_path(1))

    def append(self, text: str) -> bool:
        encoded_size = len(text.encode("utf-8"))
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if (
                self.max_bytes > 0
                and self.path.exists()
                and self.path.stat().st_size + encoded_size > self.max_bytes
            ):
                self._rotate()
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(text)
        except OSError as exc:
            logger.warning("[progress] Cannot append to %s: %s", self.path, exc)
            return False
        return True

    def entry(self, kind: str, message: str) -> bool:
        timestamp = datetime.now(UTC).replace(microsecond=0).isoformat()
        tag = kind.upper().replace("_", " ")
        return self.append(f"{timestamp} [{tag}] {message}\n")

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
