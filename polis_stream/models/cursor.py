"""Cursor Entry — last consumed stream position for one projection."""

from typing import Dict

from pydantic import BaseModel


BEGINNING_OF_LOG = "0"


class CursorEntry(BaseModel):
    """Position and last update time of a single projection's cursor."""

    position: str = ""
    last_updated: str = ""                  # UTC, "YYYY-MM-DDTHH:MM:SSZ"


class CursorsFile(BaseModel):
    """On-disk format of state/cursors.json."""

    cursors: Dict[str, CursorEntry] = {}
