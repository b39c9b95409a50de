"""
Stream Store — per-projection cursors, derived state, and user config on disk.

Root: <data_dir>/.polis/ds/<discovery-service-domain>/
  config/   user preferences (notification rules, feed settings); survives resets
  state/    derived data (cursors, followers, blessings, notifications, feed cache)

Behavioral Contract:
- Reads of anything not yet written return a zero value, never an error.
- Directories are created lazily on first write.
- State is replaced whole on save, never merged.
- Any OS or decode failure surfaces as StorageError.
- Single writer per data directory; no cross-process locking.
"""

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from polis_stream.clock import format_timestamp
from polis_stream.models.cursor import BEGINNING_OF_LOG, CursorEntry, CursorsFile
from polis_stream.models.event import cursor_greater

logger = logging.getLogger("polis_stream.store")

M = TypeVar("M", bound=BaseModel)

CURSORS_FILE = "cursors.json"


class StorageError(Exception):
    """Raised when local state or config cannot be read or written."""
    pass


class StreamStore:
    """File-backed store scoped to one discovery service domain."""

    def __init__(self, data_dir: str, discovery_domain: str):
        if not discovery_domain:
            raise ValueError("discovery_domain is required to scope the store")
        self.ds_dir = Path(data_dir) / ".polis" / "ds" / discovery_domain
        self.state_dir = self.ds_dir / "state"
        self.config_dir = self.ds_dir / "config"

    # --- Cursors (state/cursors.json) ---

    def get_cursor(self, projection: str) -> str:
        """Cursor position for a projection, or the beginning-of-log sentinel."""
        entry = self.get_cursor_entry(projection)
        return entry.position or BEGINNING_OF_LOG

    def get_cursor_entry(self, projection: str) -> CursorEntry:
        """Full cursor entry, or an empty entry if the projection never synced."""
        return self._load_cursors().cursors.get(projection, CursorEntry())

    def set_cursor(
        self, projection: str, position: str, now: Optional[datetime] = None
    ) -> CursorEntry:
        """
        Store a cursor position and refresh its last_updated timestamp.

        Positions only move forward: an older position keeps the stored one.
        """
        cursors = self._load_cursors()
        current = cursors.cursors.get(projection)
        if current and current.position and cursor_greater(current.position, position):
            logger.debug(
                f"Cursor {projection} not moved back from {current.position} to {position}"
            )
            position = current.position

        entry = CursorEntry(position=position, last_updated=format_timestamp(now))
        cursors.cursors[projection] = entry
        self._write_model(self.state_dir / CURSORS_FILE, cursors)
        return entry

    def _load_cursors(self) -> CursorsFile:
        loaded = self._read_model(self.state_dir / CURSORS_FILE, CursorsFile)
        return loaded or CursorsFile()

    # --- State (state/<name>.json) ---

    def load_state(self, name: str, model: Type[M]) -> Optional[M]:
        """Load a projection's state, or None if it was never saved."""
        return self._read_model(self.state_dir / f"{name}.json", model)

    def save_state(self, name: str, state: BaseModel) -> None:
        """Replace a projection's state."""
        self._write_model(self.state_dir / f"{name}.json", state)

    def read_jsonl(self, name: str, model: Type[M]) -> List[M]:
        """Read list-shaped state from state/<name>.jsonl; malformed lines are skipped."""
        path = self.state_dir / f"{name}.jsonl"
        try:
            with path.open("r", encoding="utf-8") as fh:
                lines = fh.readlines()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"read state {name}: {e}") from e

        items = []
        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                items.append(model.model_validate_json(line))
            except ValidationError as e:
                logger.warning(f"Skipping malformed line {lineno} in {path.name}: {e}")
        return items

    def write_jsonl(self, name: str, items: Iterable[BaseModel]) -> None:
        """Rewrite state/<name>.jsonl with the given items."""
        text = "".join(
            json.dumps(item.model_dump(mode="json"), ensure_ascii=False) + "\n"
            for item in items
        )
        self._write_text(self.state_dir / f"{name}.jsonl", text)

    def reset_state(self) -> None:
        """Wipe all derived state. Config is left untouched."""
        if not self.state_dir.exists():
            return
        try:
            shutil.rmtree(self.state_dir)
        except OSError as e:
            raise StorageError(f"reset state: {e}") from e
        logger.info(f"Reset derived state in {self.state_dir}")

    # --- Config (config/<name>.json) ---

    def load_config(self, name: str, model: Type[M]) -> Optional[M]:
        """Load user config, or None if it was never written."""
        return self._read_model(self.config_dir / f"{name}.json", model)

    def save_config(self, name: str, config: BaseModel) -> None:
        self._write_model(self.config_dir / f"{name}.json", config)

    # --- File helpers ---

    def _read_model(self, path: Path, model: Type[M]) -> Optional[M]:
        try:
            data = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageError(f"read {path.name}: {e}") from e
        try:
            return model.model_validate_json(data)
        except ValidationError as e:
            raise StorageError(f"parse {path.name}: {e}") from e

    def _write_model(self, path: Path, value: BaseModel) -> None:
        text = json.dumps(value.model_dump(mode="json"), indent=2, ensure_ascii=False)
        self._write_text(path, text + "\n")

    def _write_text(self, path: Path, text: str) -> None:
        """Write via a temp file in the same directory, then rename over the target."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(text)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise StorageError(f"write {path.name}: {e}") from e
