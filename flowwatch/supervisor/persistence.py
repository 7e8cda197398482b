"""Atomic JSON files and the supervisor state snapshot."""

from __future__ import annotations

import datetime as dt
import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from flowwatch.errors import StateInconsistencyError
from flowwatch.logging_config import get_logger
from flowwatch.supervisor.models import WorkflowState

logger = get_logger(__name__)

SNAPSHOT_VERSION = 1


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON to ``path`` via a temp file in the same directory + rename.

    Readers see either the previous file or the new one, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, ensure_ascii=False, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON from disk; a missing or corrupted file yields ``default``."""
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as exc:
        logger.warning("json_file_unreadable", path=str(path), error=str(exc))
        return default


@dataclass
class Snapshot:
    """Persisted analyzer state plus the log position it corresponds to."""
    state: WorkflowState
    log_offset: int = 0
    malformed_lines: int = 0
    emitted: list[str] = field(default_factory=list)
    saved_at: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "saved_at": dt.datetime.now(dt.UTC).isoformat(),
            "log_offset": self.log_offset,
            "malformed_lines": self.malformed_lines,
            "emitted": list(self.emitted),
            "state": self.state.to_dict(),
        }


class SnapshotStore:
    """Single-writer store for the supervisor state snapshot."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def save(self, snapshot: Snapshot) -> None:
        atomic_write_json(self._path, snapshot.to_dict())

    def load(self) -> Snapshot:
        """Load and validate the snapshot.

        Raises StateInconsistencyError when it is missing, corrupted or
        written by an incompatible version.
        """
        raw = read_json(self._path)
        if raw is None:
            raise StateInconsistencyError("no state snapshot")
        if not isinstance(raw, dict) or raw.get("version") != SNAPSHOT_VERSION:
            raise StateInconsistencyError("unsupported state snapshot")
        try:
            return Snapshot(
                state=WorkflowState.from_dict(raw["state"]),
                log_offset=int(raw["log_offset"]),
                malformed_lines=int(raw.get("malformed_lines", 0)),
                emitted=[str(s) for s in raw.get("emitted", [])],
                saved_at=raw.get("saved_at"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateInconsistencyError(f"corrupted state snapshot: {exc}") from exc

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
