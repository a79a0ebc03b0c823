from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import redis

LOG = logging.getLogger("codecanvas.events")


class EventPublisher:
    """Fan session events out to redis pub/sub; failures never reach the caller."""

    def __init__(self, url: str, channel_prefix: str = "codecanvas.stream") -> None:
        self._url = url
        self._prefix = channel_prefix
        self._client: Optional[redis.Redis] = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except redis.RedisError as exc:
            LOG.debug("event_publisher_unavailable", extra={"err": str(exc)})
            self._client = None

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        try:
            self._client.publish(f"{self._prefix}.{event_type}", json.dumps(payload, default=str))
        except redis.RedisError as exc:
            LOG.debug("event_publish_failed", extra={"type": event_type, "err": str(exc)})
            self._client = None
            return False
        return True


_publisher: Optional[EventPublisher] = None


def get_publisher(url: Optional[str]) -> Optional[EventPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    if not url:
        return None
    _publisher = EventPublisher(url)
    return _publisher


def reset_publisher() -> None:
    global _publisher
    _publisher = None
