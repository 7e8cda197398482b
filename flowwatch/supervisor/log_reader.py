"""Incremental reader for the append-only workflow event log.

One JSON object per line; a line starting with ``#`` is a human summary and
is skipped. A trailing line without a newline may be a write in progress, so
the read offset always stops in front of it and it is retried next time.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from flowwatch.logging_config import get_logger
from flowwatch.supervisor.models import EventKind, LogEntry
from flowwatch.supervisor.persistence import atomic_write_json, read_json

logger = get_logger(__name__)

QUERY_BLOCK_BYTES = 64 * 1024


def _is_transient_io_error(exc: BaseException) -> bool:
    return isinstance(exc, OSError) and not isinstance(exc, FileNotFoundError)


@dataclass
class LogBatch:
    """Entries parsed from one read, with the byte range they came from."""
    entries: list[LogEntry] = field(default_factory=list)
    start_offset: int = 0
    end_offset: int = 0
    reset: bool = False
    malformed: int = 0
    remaining: int = 0

    @property
    def advanced(self) -> bool:
        return self.end_offset != self.start_offset or self.reset


BatchCallback = Callable[[LogBatch], Awaitable[None]]


class LogReader:
    """Tails the event log and answers point queries against it."""

    def __init__(
        self,
        log_path: Path,
        checkpoint_path: Optional[Path] = None,
        *,
        poll_interval: float = 0.5,
        read_timeout: float = 5.0,
        max_read_bytes: int = 1024 * 1024,
    ) -> None:
        self._path = log_path
        self._checkpoint_path = checkpoint_path
        self._poll_interval = poll_interval
        self._read_timeout = read_timeout
        self._max_read_bytes = max(1024, max_read_bytes)
        self._offset = 0
        self._stop: Optional[asyncio.Event] = None
        self.malformed_count = 0

    @property
    def path(self) -> Path:
        return self._path

    @property
    def offset(self) -> int:
        return self._offset

    def seek(self, offset: int) -> None:
        self._offset = max(0, offset)

    def size(self) -> int:
        """Current size of the log in bytes; 0 when it does not exist yet."""
        try:
            return self._path.stat().st_size
        except FileNotFoundError:
            return 0

    # ── Offset checkpoint ────────────────────────────────────────────

    def load_checkpoint(self) -> Optional[int]:
        """Return the persisted read offset, or None if there is none."""
        if self._checkpoint_path is None:
            return None
        raw = read_json(self._checkpoint_path)
        if not isinstance(raw, dict):
            return None
        try:
            return max(0, int(raw["offset"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("log_checkpoint_invalid", path=str(self._checkpoint_path))
            return None

    def commit(self, batch: LogBatch) -> None:
        """Accept a processed batch: advance the offset and persist it."""
        moved = batch.end_offset != self._offset or batch.reset
        self._offset = batch.end_offset
        self.malformed_count += batch.malformed
        if moved:
            self._write_checkpoint()

    def _write_checkpoint(self) -> None:
        if self._checkpoint_path is None:
            return
        atomic_write_json(self._checkpoint_path, {
            "offset": self._offset,
            "log": str(self._path),
            "updated_at": dt.datetime.now(dt.UTC).isoformat(),
        })

    # ── Reading ──────────────────────────────────────────────────────

    @retry(
        retry=retry_if_exception(_is_transient_io_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    def _read_chunk(self, start: int, length: int) -> bytes:
        with self._path.open("rb") as fh:
            fh.seek(start)
            return fh.read(length)

    def read_batch(self, start: Optional[int] = None) -> LogBatch:
        """Parse complete lines from ``start`` (default: current offset).

        Does not move the offset; call :meth:`commit` once the batch has
        been handled.
        """
        start = self._offset if start is None else start
        try:
            size = self._path.stat().st_size
        except FileNotFoundError:
            return LogBatch(start_offset=start, end_offset=start)

        reset = False
        if size < start:
            logger.warning("log_truncated", path=str(self._path), offset=start, size=size)
            start = 0
            reset = True
        if size == start:
            return LogBatch(start_offset=start, end_offset=start, reset=reset)

        available = size - start
        limit = self._max_read_bytes
        while True:
            chunk = self._read_chunk(start, min(available, limit))
            if b"\n" in chunk or len(chunk) >= available:
                break
            limit *= 2

        entries, consumed, malformed = self._parse_chunk(chunk, start)
        end = start + consumed
        return LogBatch(
            entries=entries,
            start_offset=start,
            end_offset=end,
            reset=reset,
            malformed=malformed,
            remaining=size - end,
        )

    def _parse_chunk(self, chunk: bytes, base: int) -> tuple[list[LogEntry], int, int]:
        entries: list[LogEntry] = []
        malformed = 0
        consumed = 0
        last_newline = chunk.rfind(b"\n")
        if last_newline < 0:
            return entries, 0, 0
        for raw_line in chunk[: last_newline + 1].splitlines(keepends=True):
            line_offset = base + consumed
            consumed += len(raw_line)
            entry = self._parse_line(raw_line, line_offset)
            if entry is None:
                continue
            if entry is _MALFORMED:
                malformed += 1
                continue
            entries.append(entry)
        return entries, consumed, malformed

    def _parse_line(self, raw_line: bytes, offset: int):
        try:
            text = raw_line.decode("utf-8").strip()
        except UnicodeDecodeError:
            logger.debug("log_line_malformed", offset=offset, error="invalid utf-8")
            return _MALFORMED
        if not text or text.startswith("#"):
            return None
        try:
            return LogEntry.from_dict(json.loads(text), offset=offset)
        except (ValueError, TypeError) as exc:
            logger.debug("log_line_malformed", offset=offset, error=str(exc), line=text[:120])
            return _MALFORMED

    def read_through(self) -> LogBatch:
        """Read every complete line from the beginning as one batch."""
        batch = self.read_batch(start=0)
        while batch.remaining and batch.end_offset > batch.start_offset:
            more = self.read_batch(start=batch.end_offset)
            if more.reset:
                # The log was replaced while reading; start over.
                batch = self.read_batch(start=0)
                continue
            batch.entries.extend(more.entries)
            batch.malformed += more.malformed
            batch.end_offset = more.end_offset
            batch.remaining = more.remaining
            if more.end_offset == more.start_offset:
                break
        return batch

    def read_all(self) -> list[LogEntry]:
        """Every well-formed entry from the start of the log, in file order."""
        batch = self.read_through()
        if batch.malformed:
            logger.info("log_malformed_lines_skipped", count=batch.malformed)
        return batch.entries

    def query_last(
        self,
        command: str,
        event: Optional[EventKind | str] = None,
        phase: Optional[str] = None,
    ) -> Optional[LogEntry]:
        """Most recent entry for ``command`` (and ``event``/``phase`` if given).

        Scans backward from the current read position, or from the end of
        the file when nothing has been read yet. The entry's ``data`` is the
        payload the command produced. Returns None when nothing matches.
        """
        wanted_event = EventKind(event) if event else None
        wanted_phase = phase.lower() if phase else None
        end = self._offset or self.size()
        if end <= 0:
            return None

        pos = end
        carry = b""
        while pos > 0:
            read_start = max(0, pos - QUERY_BLOCK_BYTES)
            try:
                chunk = self._read_chunk(read_start, pos - read_start) + carry
            except FileNotFoundError:
                return None
            lines = chunk.split(b"\n")
            carry = lines.pop(0) if read_start > 0 else b""
            cursor = read_start + (len(carry) + 1 if read_start > 0 else 0)
            located: list[tuple[int, bytes]] = []
            for line in lines:
                located.append((cursor, line))
                cursor += len(line) + 1
            for line_offset, line in reversed(located):
                entry = self._parse_line(line, line_offset)
                if entry is None or entry is _MALFORMED:
                    continue
                if entry.command != command:
                    continue
                if wanted_event and entry.event != wanted_event:
                    continue
                if wanted_phase and entry.phase_key != wanted_phase:
                    continue
                return entry
            pos = read_start
        return None

    # ── Live tail ────────────────────────────────────────────────────

    async def tail(self, callback: BatchCallback) -> None:
        """Deliver new batches to ``callback`` until :meth:`stop` is called.

        The offset is committed only after the callback returns, so a crash
        mid-batch re-delivers that batch instead of dropping it.
        """
        if self._stop is None:
            self._stop = asyncio.Event()
        logger.info("log_tail_started", path=str(self._path), offset=self._offset)
        while not self._stop.is_set():
            batch: Optional[LogBatch] = None
            try:
                batch = await asyncio.wait_for(
                    asyncio.to_thread(self.read_batch), timeout=self._read_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning("log_read_timeout", path=str(self._path))
            except OSError as exc:
                logger.warning("log_read_failed", path=str(self._path), error=str(exc))

            if batch is not None and batch.advanced:
                await callback(batch)
                self.commit(batch)
                if batch.remaining and batch.end_offset > batch.start_offset:
                    continue

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        self._stop = None
        logger.info("log_tail_stopped", path=str(self._path), offset=self._offset)

    def stop(self) -> None:
        """Ask a running (or about to run) tail to return."""
        if self._stop is None:
            self._stop = asyncio.Event()
        self._stop.set()


_MALFORMED = object()
