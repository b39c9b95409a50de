"""
Discovery Client — queries the discovery service's event stream.

Signed queries prove domain ownership with three headers:
  X-Polis-Domain     claimed domain
  X-Polis-Timestamp  UTC timestamp of the request
  X-Polis-Signature  SSHSIG over {"action":"query","domain":...,"timestamp":...}

Any failure to complete a query (network error, timeout, HTTP >= 400,
undecodable body, unusable signing key) raises TransportError; callers
leave cursors and state untouched and retry on the next cycle.
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional

import httpx
from pydantic import ValidationError

from polis_stream.clock import format_timestamp
from polis_stream.discovery.signing import SigningError, sign_content
from polis_stream.models.event import StreamEvent, StreamQueryResponse
from polis_stream.models.sync import SyncConfig

logger = logging.getLogger("polis_stream.discovery")

STREAM_ENDPOINT = "/ds-stream"
USER_AGENT = "polis-stream/0.1"


class TransportError(Exception):
    """Raised when a stream query could not be completed."""
    pass


def make_query_auth_canonical_json(domain: str, timestamp: str) -> bytes:
    """Canonical JSON signed for query auth. Key order and compact form are fixed."""
    return json.dumps(
        {"action": "query", "domain": domain, "timestamp": timestamp},
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode()


def join_domains(domains: List[str]) -> str:
    """Comma-joined allow-list for the actor/type filters."""
    return ",".join(d for d in domains if d)


class DiscoveryClient:
    """
    HTTP client for the discovery stream, configured from a SyncConfig.

    Pass http_client to reuse a connection pool or inject a mock transport.
    """

    def __init__(self, config: SyncConfig, http_client: Optional[httpx.Client] = None):
        self.config = config
        self._http = http_client or httpx.Client(
            timeout=config.timeout_seconds,
            headers={"User-Agent": USER_AGENT},
        )
        self._owns_http = http_client is None

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "DiscoveryClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def auth_headers(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Domain-ownership headers, or {} when no private key is configured."""
        domain = self.config.my_domain
        if not domain or not self.config.private_key_pem:
            return {}

        timestamp = format_timestamp(now)
        canonical = make_query_auth_canonical_json(domain, timestamp)
        signature = sign_content(canonical, self.config.private_key_pem)
        return {
            "X-Polis-Domain": domain,
            # Armored signatures contain newlines, which HTTP headers cannot carry
            "X-Polis-Signature": signature.replace("\n", ""),
            "X-Polis-Timestamp": timestamp,
        }

    def stream_query(
        self,
        since: str = "",
        limit: int = 0,
        type_filter: str = "",
        actor_filter: str = "",
        target_filter: str = "",
        source_filter: str = "",
    ) -> StreamQueryResponse:
        """
        Events after `since`, optionally filtered.

        Filters are comma-joined allow-lists; empty means unfiltered. Events
        that fail validation are logged and skipped so one bad record cannot
        stall the stream.
        """
        params = {
            key: value
            for key, value in (
                ("since", since),
                ("limit", str(limit) if limit > 0 else ""),
                ("type", type_filter),
                ("actor", actor_filter),
                ("target", target_filter),
                ("source", source_filter),
            )
            if value
        }
        headers = {"Authorization": f"Bearer {self.config.discovery_key}"}
        try:
            headers.update(self.auth_headers())
        except SigningError as e:
            raise TransportError(f"cannot sign stream query: {e}") from e

        url = self.config.discovery_url.rstrip("/") + STREAM_ENDPOINT
        try:
            response = self._http.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise TransportError(f"stream query timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"stream query failed: {e}") from e

        if response.status_code >= 400:
            raise TransportError(
                f"stream query failed with status {response.status_code}: {response.text}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TransportError(f"failed to parse stream response: {e}") from e
        if not isinstance(body, dict):
            raise TransportError("stream response is not an object")

        return self._parse_response(body)

    def _parse_response(self, body: dict) -> StreamQueryResponse:
        raw_events = body.get("events") or []
        if not isinstance(raw_events, list):
            raise TransportError("stream response events is not a list")

        events = []
        for raw in raw_events:
            try:
                events.append(StreamEvent.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"Skipping malformed stream event: {e.errors()[:1]}")

        cursor = body.get("cursor")
        return StreamQueryResponse(
            events=events,
            cursor="" if cursor is None else str(cursor),
            has_more=bool(body.get("has_more", False)),
            skipped=len(raw_events) - len(events),
        )
