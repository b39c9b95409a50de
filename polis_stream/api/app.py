"""
Polis Stream API — FastAPI endpoints over the local projections.

Exposes, for one (site, discovery service) pair:
- Feed listing and read state
- Notification listing and read state
- Followers and blessings
- Sync status and manual trigger
- Feed and notification configuration
"""

from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from polis_stream.feed.cache import ItemNotFoundError
from polis_stream.models.feed import FeedConfig
from polis_stream.models.projection import BlessingState, FollowerState, ProjectionKind
from polis_stream.models.sync import SyncConfig
from polis_stream.notification.manager import (
    load_notification_config,
    mute_domain,
    set_rule_enabled,
    unmute_domain,
)
from polis_stream.store.store import StorageError
from polis_stream.sync.driver import SyncDriver


# --- Request/Response Models ---

class FeedReadRequest(BaseModel):
    id: str = ""
    unread: bool = False
    all: bool = False
    from_id: str = ""


class NotificationReadRequest(BaseModel):
    ids: List[str] = []
    all: bool = False


class RuleUpdateRequest(BaseModel):
    enabled: bool


class FeedConfigRequest(BaseModel):
    staleness_minutes: Optional[int] = None
    max_items: Optional[int] = None
    max_age_days: Optional[int] = None


# --- Application Factory ---

def create_app(config: SyncConfig, driver: Optional[SyncDriver] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Polis Stream API",
        description="Local projections of the polis discovery stream",
        version="0.1.0",
    )

    sync = driver or SyncDriver(config)
    store = sync.store
    feed = sync.feed
    notifications = sync.notifications

    app.state.config = config
    app.state.driver = sync
    app.state.store = store
    # Every route that writes the store holds the driver's lock, so a
    # read-state change cannot interleave with a sync cycle's rewrite
    app.state.lock = sync.lock

    @app.exception_handler(StorageError)
    def storage_error_handler(request: Request, exc: StorageError):
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    # === FEED ===

    @app.get("/feed")
    def list_feed(type: str = "", status: str = ""):
        """Cached feed items, newest first."""
        items = feed.list_filtered(item_type=type, status=status)
        return {
            "items": [i.model_dump(mode="json") for i in items],
            "total": len(items),
            "unread": feed.unread_count(),
            "stale": feed.is_stale(),
            "last_refresh": feed.last_updated(),
        }

    @app.get("/feed/counts")
    def feed_counts():
        items = feed.list()
        return {
            "total": len(items),
            "unread": sum(1 for i in items if not i.is_read),
            "stale": feed.is_stale(),
        }

    @app.post("/feed/read")
    def feed_read(req: FeedReadRequest):
        """Mark one item read or unread, everything read, or unread from an item onward."""
        if not (req.all or req.from_id or req.id):
            raise HTTPException(400, "id, all, or from_id is required")
        try:
            with sync.lock:
                if req.all:
                    return {"success": True, "marked": feed.mark_all_read()}
                if req.from_id:
                    return {"success": True, "marked": feed.mark_unread_from(req.from_id)}
                if req.unread:
                    feed.mark_unread(req.id)
                else:
                    feed.mark_read(req.id)
        except ItemNotFoundError:
            raise HTTPException(404, "Feed item not found")
        return {"success": True, "marked": 1}

    # === NOTIFICATIONS ===

    @app.get("/notifications")
    def list_notifications(offset: int = 0, limit: int = 20, include_read: bool = False):
        """Newest-first page of notifications."""
        items, total = notifications.list_paginated(
            offset=offset, limit=limit, include_read=include_read
        )
        return {
            "notifications": [n.model_dump(mode="json") for n in items],
            "total": total,
            "offset": offset,
            "limit": limit,
        }

    @app.get("/notifications/count")
    def notification_count():
        return {"unread": notifications.count_unread()}

    @app.post("/notifications/read")
    def notifications_read(req: NotificationReadRequest):
        if not req.all and not req.ids:
            raise HTTPException(400, "ids or all is required")
        with sync.lock:
            marked = notifications.mark_read(ids=req.ids, all=req.all)
        return {"success": True, "marked": marked}

    # === PROJECTIONS ===

    @app.get("/followers")
    def get_followers():
        state = store.load_state(ProjectionKind.FOLLOWERS.value, FollowerState)
        return (state or FollowerState()).model_dump(mode="json")

    @app.get("/blessings")
    def get_blessings():
        state = store.load_state(ProjectionKind.BLESSINGS.value, BlessingState)
        return (state or BlessingState()).model_dump(mode="json")

    # === SYNC ===

    @app.get("/sync/status")
    def sync_status():
        """Cursor positions and the outcome of the last cycle."""
        last = sync.last_result
        return {
            "status": sync.status,
            "my_domain": config.my_domain,
            "discovery_domain": config.discovery_domain,
            "cursor": store.get_cursor_entry(ProjectionKind.SYNC.value).model_dump(),
            "last_result": last.model_dump(mode="json") if last else None,
        }

    @app.post("/sync/trigger")
    def trigger_sync():
        """Run one sync cycle now."""
        result = sync.run_once()
        data = result.model_dump(mode="json")
        data["message"] = result.message
        return data

    # === CONFIG ===

    @app.get("/config/feed")
    def get_feed_config():
        return feed.load_config().model_dump()

    @app.put("/config/feed")
    def update_feed_config(req: FeedConfigRequest):
        updates = req.model_dump(exclude_none=True)
        with sync.lock:
            current = feed.load_config()
            saved = feed.save_config(FeedConfig(**{**current.model_dump(), **updates}))
        return saved.model_dump()

    @app.get("/config/notifications")
    def get_notification_config():
        return load_notification_config(store).model_dump(mode="json")

    @app.put("/config/notifications/rules/{rule_id}")
    def update_rule(rule_id: str, req: RuleUpdateRequest):
        """Enable or disable a notification rule."""
        try:
            with sync.lock:
                updated = set_rule_enabled(store, rule_id, req.enabled)
        except KeyError:
            raise HTTPException(404, "Rule not found")
        rule = next(r for r in updated.rules if r.id == rule_id)
        return rule.model_dump(mode="json")

    @app.put("/config/notifications/muted/{domain}")
    def mute(domain: str):
        with sync.lock:
            updated = mute_domain(store, domain)
        return {"muted_domains": updated.muted_domains}

    @app.delete("/config/notifications/muted/{domain}")
    def unmute(domain: str):
        with sync.lock:
            updated = unmute_domain(store, domain)
        return {"muted_domains": updated.muted_domains}

    return app
