from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Protocol, Set

from ..core import state_machine as sm
from ..domain.artifact_models import ConsolidatedArtifact, StreamEvent
from ..infrastructure.events import EventPublisher
from .code_intent import IntentResult

LOG = logging.getLogger("codecanvas.stream")

CLOSE_REASONS = ("completed", "error", "timeout", "capacity_limit", "write_error", "server_shutdown")


class SinkClosed(ConnectionError):
    pass


class EventSink(Protocol):
    def write(self, frame: str) -> None:  # pragma: no cover - interface
        ...

    def close(self) -> None:  # pragma: no cover - interface
        ...


class QueueEventSink:
    """Buffer SSE frames for an HTTP streaming response."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.closed = False

    def write(self, frame: str) -> None:
        if self.closed:
            raise SinkClosed("event sink is closed")
        self._queue.put_nowait(frame)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)

    def disconnect(self) -> None:
        """Client went away: reject further writes without a sentinel."""
        self.closed = True

    async def frames(self):
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


@dataclass
class StreamOptions:
    enable_artifact_processing: bool = True
    enable_building: bool = True
    enable_preview: bool = True
    compression: bool = False
    enable_security: bool = True


def _now_ms() -> int:
    return int(time.time() * 1000)


class StreamSession:
    """One streaming exchange: buffer, lifecycle state and bounded event history.

    Once the state is terminal ``emit`` does nothing, and the sink is never
    written again.
    """

    def __init__(
        self,
        session_id: str,
        sink: EventSink,
        options: Optional[StreamOptions] = None,
        history_limit: int = 100,
        clock: Callable[[], float] = time.time,
        publisher: Optional[EventPublisher] = None,
        on_close: Optional[Callable[["StreamSession"], None]] = None,
    ) -> None:
        self.id = session_id
        self.sink = sink
        self.options = options or StreamOptions()
        self._clock = clock
        self._publisher = publisher
        self._on_close = on_close
        self.state = sm.CREATED
        self.started_at = clock()
        self.last_activity_at = self.started_at
        self.history: Deque[StreamEvent] = deque(maxlen=history_limit)
        self.buffer = ""
        self.total_chunks = 0
        self.artifacts_processed = 0
        self.projects_processed = 0
        self.seen_hashes: Set[str] = set()
        self.seen_projects: Set[str] = set()
        self.block_count = 0
        self.pending_builds: Set["asyncio.Future[Any]"] = set()
        self.close_reason: Optional[str] = None
        self.prompt_intent: Optional[IntentResult] = None
        self.latest_artifact: Optional[ConsolidatedArtifact] = None

    @property
    def terminal(self) -> bool:
        return sm.is_terminal(self.state)

    def touch(self) -> None:
        self.last_activity_at = self._clock()

    def advance(self, target: str) -> bool:
        if self.state == target:
            return True
        if not sm.is_valid_transition(self.state, target):
            LOG.debug("session_transition_rejected", extra={"session_id": self.id, "from": self.state, "to": target})
            return False
        self.state = target
        return True

    def _event(self, event_type: str, data: Dict[str, Any]) -> StreamEvent:
        return StreamEvent(
            id=f"{self.id}_{_now_ms()}_{secrets.token_hex(4)}",
            type=event_type,
            session_id=self.id,
            timestamp=self._clock(),
            data=data,
        )

    def emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> Optional[StreamEvent]:
        if self.terminal:
            return None
        event = self._event(event_type, data or {})
        try:
            self.sink.write(event.to_sse())
        except Exception as exc:
            LOG.error("session_write_failed", extra={"session_id": self.id, "type": event_type, "err": str(exc)})
            self._terminate(sm.ERROR, "write_error")
            return None
        self.history.append(event)
        self.touch()
        if self._publisher is not None:
            self._publisher.publish(event_type, event.model_dump())
        return event

    def close(self, state: str, reason: str, message: Optional[str] = None) -> bool:
        """Enter terminal ``state`` once, writing the final events first."""
        if self.terminal:
            return False
        if state == sm.COMPLETED and self.state != sm.FINALIZING:
            self.advance(sm.FINALIZING)
        if state == sm.ERROR and message:
            self.emit("error", {"message": message, "session_id": self.id})
        self.emit(
            "complete",
            {
                "reason": reason,
                "session_id": self.id,
                "artifacts_processed": self.artifacts_processed,
                "projects_processed": self.projects_processed,
                "total_chunks": self.total_chunks,
            },
        )
        if self.terminal:
            # the final write failed and already tore the session down
            return True
        self._terminate(state, reason)
        return True

    def _terminate(self, state: str, reason: str) -> None:
        if self.terminal:
            return
        self.state = state
        self.close_reason = reason
        try:
            self.sink.close()
        except Exception as exc:
            LOG.debug("session_sink_close_failed", extra={"session_id": self.id, "err": str(exc)})
        LOG.info(
            "session_closed",
            extra={"session_id": self.id, "state": state, "reason": reason, "artifacts": self.artifacts_processed},
        )
        if self._on_close is not None:
            self._on_close(self)

    def track(self, task: "asyncio.Future[Any]") -> None:
        self.pending_builds.add(task)
        task.add_done_callback(self.pending_builds.discard)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "started_at": self.started_at,
            "last_activity_at": self.last_activity_at,
            "artifacts_processed": self.artifacts_processed,
            "projects_processed": self.projects_processed,
            "total_chunks": self.total_chunks,
            "events": len(self.history),
            "close_reason": self.close_reason,
        }
