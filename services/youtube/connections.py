"""
Per-stream connection bookkeeping for YouTube.

A video id is present in the manager iff a connection attempt has been
made for it. Status moves pending -> ready, or to broken on failure; a
disconnect removes the record entirely.

"Active" (pending or ready) is deliberately wider than "ready": viewer
aggregation uses the active set so that a stream whose chat handshake
has not completed still contributes its viewers.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.logging.logger import get_logger
from shared.platforms.state import ACTIVE_CONNECTION_STATUSES, ConnectionStatus

log = get_logger("youtube.connections")

ConnectionFactory = Callable[[str], Awaitable[Any]]


def _utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ConnectionRecord:
    video_id: str
    status: ConnectionStatus = ConnectionStatus.PENDING
    connection: Any = None
    created_at: str = field(default_factory=_utc_iso)
    last_ready_at: Optional[str] = None
    last_error: Optional[str] = None
    connect_duration_ms: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "video_id": self.video_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "last_ready_at": self.last_ready_at,
            "last_error": self.last_error,
            "connect_duration_ms": self.connect_duration_ms,
            "reason": self.reason,
        }


class YouTubeConnectionManager:
    """
    Owns the {video_id -> ConnectionRecord} map.

    Operations on the same video id are serialized; a second connect or
    disconnect for an id that is mid-operation is refused.
    """

    def __init__(self):
        self._records: Dict[str, ConnectionRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, video_id: str) -> asyncio.Lock:
        return self._locks.setdefault(video_id, asyncio.Lock())

    # ------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------

    def has_connection(self, video_id: str) -> bool:
        record = self._records.get(video_id)
        return bool(record and record.status in ACTIVE_CONNECTION_STATUSES)

    def get_connection_count(self) -> int:
        return len(self.get_active_video_ids())

    def get_all_video_ids(self) -> List[str]:
        return list(self._records)

    def get_active_video_ids(self) -> List[str]:
        return [
            video_id
            for video_id, record in self._records.items()
            if record.status in ACTIVE_CONNECTION_STATUSES
        ]

    def get_ready_video_ids(self) -> List[str]:
        return [v for v in self._records if self.is_connection_ready(v)]

    def is_connection_ready(self, video_id: str) -> bool:
        record = self._records.get(video_id)
        return bool(record and record.status is ConnectionStatus.READY)

    def get_connection(self, video_id: str) -> Any:
        record = self._records.get(video_id)
        return record.connection if record else None

    def get_connection_state(self, video_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(video_id)
        return record.to_dict() if record else None

    def get_connection_status(self) -> Dict[str, Any]:
        return {
            "total": len(self._records),
            "active": len(self.get_active_video_ids()),
            "ready": len(self.get_ready_video_ids()),
            "connections": [r.to_dict() for r in self._records.values()],
        }

    # ------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------

    def set_connection_ready(self, video_id: str) -> bool:
        record = self._records.get(video_id)
        if record is None:
            log.debug(f"[youtube] Ready signal for unknown stream {video_id} ignored")
            return False
        if record.status is ConnectionStatus.READY:
            return True
        record.status = ConnectionStatus.READY
        record.last_ready_at = _utc_iso()
        record.last_error = None
        log.info(f"[youtube] Chat ready for stream {video_id}")
        return True

    def mark_connection_broken(self, video_id: str, error: Any = None) -> None:
        record = self._records.get(video_id)
        if record is None:
            return
        record.status = ConnectionStatus.BROKEN
        record.last_error = str(error) if error is not None else record.last_error
        log.warning(f"[youtube] Stream {video_id} connection broken: {error}")

    # ------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------

    async def connect_to_stream(
        self,
        video_id: str,
        factory: ConnectionFactory,
        *,
        reason: str = "stream detected",
    ) -> bool:
        """
        Create a connection for `video_id` via `factory(video_id)`.

        Returns False when the id is already active or mid-operation.
        On factory failure the record is kept as broken and the error is
        re-raised to the caller.
        """
        if not video_id:
            raise ValueError("video_id is required")

        lock = self._lock_for(video_id)
        if lock.locked():
            log.warning(f"[youtube] Connection already in progress for {video_id}")
            return False

        async with lock:
            if self.has_connection(video_id):
                existing = self._records[video_id]
                log.warning(
                    f"[youtube] Already connected to {video_id} (status={existing.status.value})"
                )
                return False

            record = ConnectionRecord(video_id=video_id, reason=reason)
            self._records[video_id] = record
            log.info(f"[youtube] Connecting to stream {video_id}")

            started = time.perf_counter()
            try:
                connection = await factory(video_id)
            except asyncio.CancelledError:
                self._records.pop(video_id, None)
                raise
            except Exception as e:
                record.status = ConnectionStatus.BROKEN
                record.last_error = str(e)
                raise

            record.connection = connection
            record.connect_duration_ms = round((time.perf_counter() - started) * 1000.0, 3)
            log.info(f"[youtube] Connected to stream {video_id}")
            return True

    async def disconnect_from_stream(self, video_id: str, reason: str = "unknown") -> bool:
        lock = self._lock_for(video_id)
        if lock.locked():
            log.warning(f"[youtube] Disconnection already in progress for {video_id}")
            return False

        async with lock:
            record = self._records.get(video_id)
            if record is None:
                log.debug(f"[youtube] No connection to disconnect for {video_id}")
                return False

            log.info(f"[youtube] Disconnecting from {video_id} (reason: {reason})")
            record.status = ConnectionStatus.TERMINATED
            await self._shutdown_connection(record.connection, video_id)
            self._records.pop(video_id, None)

        self._locks.pop(video_id, None)
        return True

    async def remove_connection(self, video_id: str) -> bool:
        return await self.disconnect_from_stream(video_id, reason="removed")

    async def cleanup_all_connections(self) -> None:
        video_ids = self.get_all_video_ids()
        for video_id in video_ids:
            await self.disconnect_from_stream(video_id, reason="cleanup")
        if video_ids:
            log.info(f"[youtube] Cleaned up {len(video_ids)} stream connection(s)")

    @staticmethod
    async def _shutdown_connection(connection: Any, video_id: str) -> None:
        if connection is None:
            return
        for name in ("stop", "disconnect"):
            fn = getattr(connection, name, None)
            if not callable(fn):
                continue
            try:
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"[youtube] {name}() for {video_id} failed; ignored: {e}")


__all__ = ["ConnectionRecord", "YouTubeConnectionManager"]
