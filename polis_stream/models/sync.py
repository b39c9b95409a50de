"""Sync configuration and per-cycle results."""

from typing import Dict, Optional

from pydantic import BaseModel

from polis_stream.models.event import extract_domain_from_url


class SyncConfig(BaseModel):
    """
    Everything a sync cycle needs, passed down explicitly.

    One instance per (local site, discovery service) pair, so a single
    process can track several discovery services side by side.
    """

    data_dir: str
    base_url: str                           # Local site, e.g. "https://bob.com"
    discovery_url: str                      # e.g. "https://ds.polis.pub"
    discovery_key: str = ""                 # Bearer API key
    private_key_pem: Optional[bytes] = None # Enables signed queries
    query_limit: int = 1000
    timeout_seconds: float = 30.0
    interval_seconds: int = 900
    schedule: str = ""                      # Cron expression; overrides interval_seconds

    @property
    def my_domain(self) -> str:
        return extract_domain_from_url(self.base_url)

    @property
    def discovery_domain(self) -> str:
        return extract_domain_from_url(self.discovery_url)


class SyncResult(BaseModel):
    """Outcome of one sync cycle."""

    synced: bool = False                    # False when nothing could be fetched
    events_processed: int = 0
    new_notifications: int = 0
    new_feed_items: int = 0
    followers_changed: bool = False
    blessings_changed: bool = False
    cursor: str = ""
    skipped_events: int = 0
    failed: Dict[str, str] = {}             # Projection name -> error message

    @property
    def message(self) -> str:
        if not self.synced:
            return "no new data synced"
        if self.failed:
            names = ", ".join(sorted(self.failed))
            return f"synced {self.events_processed} events; failed: {names}"
        return f"synced {self.events_processed} events"
