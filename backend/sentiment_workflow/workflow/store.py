"""Durable, append-only workflow history stores."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, unquote

from pydantic import ValidationError

from .exceptions import HistoryConflictError
from .models import HistoryEvent

logger = logging.getLogger(__name__)


class HistoryStore(Protocol):
    """Append-only record of workflow events, ordered by `sequence`."""

    def ensure_base_dir(self) -> None:
        """Prepare backing storage; a no-op for remote stores."""

    def append(
        self, event: HistoryEvent, *, expected_sequence: int | None = None
    ) -> HistoryEvent:
        """Assign the next sequence number and persist the event.

        With `expected_sequence`, the append only succeeds if the history
        currently ends at that sequence; otherwise `HistoryConflictError`.
        """

    def read(self, workflow_id: str, after_sequence: int = 0) -> list[HistoryEvent]:
        """Return the events with sequence greater than `after_sequence`."""

    def last_sequence(self, workflow_id: str) -> int:
        """Sequence of the newest event, 0 for an unknown workflow."""

    def exists(self, workflow_id: str) -> bool:
        """Return True if any event was recorded for the workflow."""

    def list_workflow_ids(self) -> list[str]:
        """Return every workflow id with a recorded history."""


class InMemoryHistoryStore:
    """Process-local history store, suitable for tests and single-process runs."""

    def __init__(self) -> None:
        self._events: dict[str, list[HistoryEvent]] = {}
        self._lock = threading.Lock()

    def ensure_base_dir(self) -> None:
        return None

    def append(
        self, event: HistoryEvent, *, expected_sequence: int | None = None
    ) -> HistoryEvent:
        with self._lock:
            events = self._events.setdefault(event.workflow_id, [])
            current = len(events)
            if expected_sequence is not None and expected_sequence != current:
                if not events:
                    self._events.pop(event.workflow_id, None)
                raise HistoryConflictError(event.workflow_id, expected_sequence, current)
            stored = event.model_copy(update={"sequence": current + 1})
            events.append(stored)
        return stored

    def read(self, workflow_id: str, after_sequence: int = 0) -> list[HistoryEvent]:
        with self._lock:
            events = self._events.get(workflow_id, [])
            return [event.model_copy(deep=True) for event in events[after_sequence:]]

    def last_sequence(self, workflow_id: str) -> int:
        with self._lock:
            return len(self._events.get(workflow_id, []))

    def exists(self, workflow_id: str) -> bool:
        with self._lock:
            return bool(self._events.get(workflow_id))

    def list_workflow_ids(self) -> list[str]:
        with self._lock:
            return [workflow_id for workflow_id, events in self._events.items() if events]


class FileHistoryStore:
    """Append-only per-workflow history backed by JSONL files."""

    def __init__(self, base_dir: str | Path, *, ensure_dirs: bool = True):
        self.base_dir = Path(base_dir)
        if ensure_dirs:
            self.ensure_base_dir()
        self._seq_cache: dict[str, int] = {}
        self._lock = threading.Lock()

    def ensure_base_dir(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _history_file(self, workflow_id: str) -> Path:
        # Workflow ids embed free-form product names.
        return self.base_dir / f"{quote(workflow_id, safe='')}.jsonl"

    def _load_seq_from_disk(self, workflow_id: str) -> int:
        path = self._history_file(workflow_id)
        if not path.exists():
            return 0
        last_seq = 0
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning(
                        "skipping corrupt history line",
                        extra={"workflow_id": workflow_id},
                    )
                    continue
                seq = int(payload.get("sequence") or 0)
                if seq > last_seq:
                    last_seq = seq
        return last_seq

    def _current_seq_locked(self, workflow_id: str) -> int:
        seq = self._seq_cache.get(workflow_id)
        if seq is None:
            seq = self._load_seq_from_disk(workflow_id)
            self._seq_cache[workflow_id] = seq
        return seq

    def append(
        self, event: HistoryEvent, *, expected_sequence: int | None = None
    ) -> HistoryEvent:
        with self._lock:
            current = self._current_seq_locked(event.workflow_id)
            if expected_sequence is not None and expected_sequence != current:
                raise HistoryConflictError(event.workflow_id, expected_sequence, current)
            stored = event.model_copy(update={"sequence": current + 1})
            path = self._history_file(event.workflow_id)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(stored.model_dump(mode="json"), separators=(",", ":")))
                handle.write("\n")
            self._seq_cache[event.workflow_id] = stored.sequence
        return stored

    def read(self, workflow_id: str, after_sequence: int = 0) -> list[HistoryEvent]:
        path = self._history_file(workflow_id)
        if not path.exists():
            return []
        events: list[HistoryEvent] = []
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    event = HistoryEvent.model_validate(json.loads(line))
                except (json.JSONDecodeError, ValidationError):
                    logger.warning(
                        "skipping malformed history line line=%s",
                        line,
                        extra={"workflow_id": workflow_id},
                    )
                    continue
                if event.sequence > after_sequence:
                    events.append(event)
        events.sort(key=lambda item: item.sequence)
        return events

    def last_sequence(self, workflow_id: str) -> int:
        with self._lock:
            return self._current_seq_locked(workflow_id)

    def exists(self, workflow_id: str) -> bool:
        return self.last_sequence(workflow_id) > 0

    def list_workflow_ids(self) -> list[str]:
        if not self.base_dir.exists():
            return []
        return sorted(unquote(path.stem) for path in self.base_dir.glob("*.jsonl"))
