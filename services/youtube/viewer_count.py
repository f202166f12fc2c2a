"""
Per-video concurrent-viewer extraction over Innertube.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Iterable, List, Optional

from services.youtube.extractor import YouTubeViewerExtractor
from shared.logging.logger import get_logger

log = get_logger("youtube.viewer_count")

INSTANCE_KEY = "viewer-count"


class ViewerCountExtractionService:
    """
    Fetches video info through the Innertube instance manager and runs the
    extractor strategy chain on it.

    Results are dicts: {success, count, video_id, strategy, error}.
    """

    def __init__(
        self,
        *,
        instance_manager,
        extractor: Optional[YouTubeViewerExtractor] = None,
        timeout_ms: float = 8000,
    ):
        if instance_manager is None:
            raise RuntimeError("ViewerCountExtractionService requires an Innertube instance manager")

        self.instance_manager = instance_manager
        self.extractor = extractor or YouTubeViewerExtractor()
        self.timeout_ms = timeout_ms

        self._stats = {
            "total_requests": 0,
            "successful_extractions": 0,
            "failed_extractions": 0,
            "started_at": time.time(),
        }

    # ------------------------------------------------------------

    async def get_video_viewer_count(self, video_id: str) -> Dict[str, Any]:
        self._stats["total_requests"] += 1
        result: Dict[str, Any] = {
            "success": False,
            "count": 0,
            "video_id": video_id,
            "strategy": None,
            "error": None,
        }

        if not video_id:
            result["error"] = "video_id is required"
            self._stats["failed_extractions"] += 1
            return result

        try:
            client = await self.instance_manager.get_instance(INSTANCE_KEY)
            info = await asyncio.wait_for(
                client.get_info(video_id), timeout=self.timeout_ms / 1000.0
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = TimeoutError(f"getInfo timed out after {int(self.timeout_ms)}ms")
            self.instance_manager.mark_instance_unhealthy(INSTANCE_KEY, e)
            self._stats["failed_extractions"] += 1
            result["error"] = str(e)
            log.debug(f"[youtube] Video info fetch failed for {video_id}: {e}")
            return result

        extracted = self.extractor.extract_concurrent_viewers(info)
        result["success"] = extracted["success"]
        result["count"] = extracted["count"]
        result["strategy"] = extracted["strategy"]
        result["metadata"] = extracted["metadata"]

        if extracted["success"]:
            self._stats["successful_extractions"] += 1
        else:
            self._stats["failed_extractions"] += 1
            result["error"] = "No extraction strategy produced a viewer count"
        return result

    async def get_aggregated_viewer_count(self, video_ids: Iterable[str]) -> Dict[str, Any]:
        ids: List[str] = list(video_ids or [])
        if not ids:
            return {
                "success": True,
                "total_count": 0,
                "successful_streams": 0,
                "failed_streams": 0,
                "streams": [],
            }

        results = await asyncio.gather(*(self.get_video_viewer_count(v) for v in ids))

        total = 0
        ok = 0
        streams = []
        for item in results:
            if item["success"]:
                total += item["count"]
                ok += 1
            streams.append(
                {
                    "video_id": item["video_id"],
                    "count": item["count"],
                    "success": item["success"],
                    "strategy": item["strategy"],
                    "error": item["error"],
                }
            )

        log.debug(f"[youtube] Aggregated {total} viewers from {ok}/{len(ids)} streams")
        return {
            "success": ok > 0,
            "total_count": total,
            "successful_streams": ok,
            "failed_streams": len(ids) - ok,
            "streams": streams,
        }

    def get_stats(self) -> Dict[str, Any]:
        total = self._stats["total_requests"]
        ok = self._stats["successful_extractions"]
        return {
            "total_requests": total,
            "successful_extractions": ok,
            "failed_extractions": self._stats["failed_extractions"],
            "success_rate": round(ok / total * 100, 2) if total else 0.0,
            "uptime_s": round(time.time() - self._stats["started_at"], 3),
        }


__all__ = ["ViewerCountExtractionService"]
