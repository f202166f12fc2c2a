"""
Pushes formatted viewer counts into OBS text sources.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from services.viewer_count.format import format_viewer_count
from services.viewer_count.system import (
    StreamStatusUpdate,
    ViewerCountObserver,
    ViewerCountUpdate,
)
from shared.logging.logger import get_logger

log = get_logger("viewer_count.obs")

OBSERVER_ID = "obs-viewer-count-observer"


class OBSViewerCountObserver(ViewerCountObserver):
    """
    Writes `format_viewer_count(n)` into each platform's
    `viewerCountSource` input via SetInputSettings.

    The OBS client is any object with `is_connected()` and
    `async call(method, params)`.
    """

    def __init__(self, *, obs_manager, config_manager):
        super().__init__(observer_id=OBSERVER_ID)
        if obs_manager is None:
            raise RuntimeError("OBSViewerCountObserver requires an OBS manager")
        if config_manager is None:
            raise RuntimeError("OBSViewerCountObserver requires a config manager")
        self.obs_manager = obs_manager
        self.config_manager = config_manager

    # ------------------------------------------------------------

    def _source_for(self, platform: str) -> Optional[str]:
        section = self.config_manager.get_section(platform)
        if not section.get("viewerCountEnabled"):
            return None
        source = section.get("viewerCountSource")
        if not isinstance(source, str) or not source.strip():
            return None
        return source

    async def initialize(self) -> None:
        for platform in self.config_manager.get_platforms():
            source = self._source_for(platform)
            if source:
                await self._set_text(platform, source, "0")
        log.debug("[ViewerCount] OBS viewer count sources reset")

    async def on_viewer_count_update(self, update: ViewerCountUpdate) -> None:
        if not update.is_stream_live:
            return
        source = self._source_for(update.platform)
        if not source:
            return
        await self._set_text(update.platform, source, format_viewer_count(update.count))

    async def on_stream_status_change(self, status: StreamStatusUpdate) -> None:
        if status.is_live or not status.was_live:
            return
        source = self._source_for(status.platform)
        if source:
            await self._set_text(status.platform, source, "0")

    async def cleanup(self) -> None:
        return None

    # ------------------------------------------------------------

    async def _set_text(self, platform: str, source: str, text: str) -> bool:
        try:
            if not self.obs_manager.is_connected():
                log.debug(f"[{platform}] OBS not connected; viewer count '{text}' not shown")
                return False

            params: Dict[str, Any] = {
                "inputName": source,
                "inputSettings": {"text": text},
                "overlay": True,
            }
            await self.obs_manager.call("SetInputSettings", params)
            log.debug(f"[{platform}] OBS source '{source}' set to {text}")
            return True

        except asyncio.CancelledError:
            raise
        except Exception as e:
            if "not found" in str(e).lower():
                log.debug(f"[{platform}] OBS source '{source}' not found")
            else:
                log.warning(f"[{platform}] OBS viewer count update failed: {e}")
            return False


__all__ = ["OBSViewerCountObserver", "OBSERVER_ID"]
