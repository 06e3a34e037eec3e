import os
from datetime import datetime
from pathlib import Path
from typing import Any

import jsonlines
from loguru import logger

from federal_job_finder.db import from_iso, to_iso

LAST_SYNC_DATE_KEY = "last_sync_date"
PENDING_CHANGES_KEY = "has_pending_changes"


class SyncStateStore:
    """
    Durable key-value storage for sync metadata, backed by a JSONL file.

    Every write appends a ``{"key": ..., "value": ...}`` line; on load the
    last line for each key wins. Once the file holds more than ``max_lines``
    lines it is compacted to one line per key, on load or after a write.
    """

    def __init__(self, state_file: Path | str, max_lines: int = 64):
        """
        Args:
            state_file (Path | str): Path of the JSONL file holding the state
            max_lines (int): Line count that triggers compaction
        """
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)

        self.max_lines = max(max_lines, 1)
        self._line_count = 0

        # In-memory view for faster lookups
        self._values: dict[str, Any] = self._load()
        if self._line_count > self.max_lines:
            self.compact()

    def _load(self) -> dict[str, Any]:
        values: dict[str, Any] = {}

        if not self.state_file.exists():
            return values

        try:
            with jsonlines.open(self.state_file, mode='r') as reader:
                for obj in reader.iter(type=dict, skip_invalid=True):
                    self._line_count += 1
                    key = obj.get("key")
                    if key:
                        values[key] = obj.get("value")
        except (OSError, jsonlines.InvalidLineError) as e:
            logger.error(f"Error loading sync state from {self.state_file}: {e}")

        logger.info(f"Loaded {len(values)} sync state entries from {self.state_file}")
        return values

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """
        Persist a value for key

        Args:
            key (str): State key
            value (Any): JSON-serializable value
        """
        self._values[key] = value
        with jsonlines.open(self.state_file, mode='a') as writer:
            writer.write({"key": key, "value": value})
        logger.debug(f"Persisted sync state {key}={value!r}")

        self._line_count += 1
        if self._line_count > self.max_lines:
            self.compact()

    def compact(self) -> None:
        """Rewrite the file with only the latest value of each key."""
        tmp_file = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        with jsonlines.open(tmp_file, mode='w') as writer:
            for key, value in self._values.items():
                writer.write({"key": key, "value": value})
        os.replace(tmp_file, self.state_file)
        self._line_count = len(self._values)
        logger.info(f"Compacted sync state file {self.state_file}")

    # Typed accessors for the two durable SyncState fields

    @property
    def last_sync_date(self) -> datetime | None:
        return from_iso(self.get(LAST_SYNC_DATE_KEY))

    @last_sync_date.setter
    def last_sync_date(self, value: datetime | None) -> None:
        self.set(LAST_SYNC_DATE_KEY, to_iso(value))

    @property
    def has_pending_changes(self) -> bool:
        return bool(self.get(PENDING_CHANGES_KEY, False))

    @has_pending_changes.setter
    def has_pending_changes(self, value: bool) -> None:
        self.set(PENDING_CHANGES_KEY, bool(value))
