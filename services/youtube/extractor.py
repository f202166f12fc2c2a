"""
Concurrent-viewer extraction from YouTube live metadata.

The metadata document is opaque and changes shape between client versions,
so extraction is a chain of strategies tried in order. The first strategy
producing a valid count wins and later strategies are not consulted.
"""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from shared.logging.logger import get_logger

log = get_logger("youtube.extractor")

MAX_VIEWER_COUNT = 10_000_000

STRATEGY_VIEW_TEXT = "view_text"
STRATEGY_VIDEO_DETAILS = "video_details"
STRATEGY_BASIC_INFO = "basic_info"

DEFAULT_STRATEGIES: Tuple[str, ...] = (
    STRATEGY_VIEW_TEXT,
    STRATEGY_VIDEO_DETAILS,
    STRATEGY_BASIC_INFO,
)

# Order matters: the most specific phrasing is tried first
WATCHING_PATTERNS: Tuple[Tuple[str, "re.Pattern[str]"], ...] = (
    ("watching_now", re.compile(r"([0-9,]+)\s*watching\s*now", re.IGNORECASE)),
    ("watching", re.compile(r"([0-9,]+)\s*watching", re.IGNORECASE)),
    ("currently_watching", re.compile(r"([0-9,]+)\s*currently\s*watching", re.IGNORECASE)),
    ("viewers_watching", re.compile(r"([0-9,]+)\s*viewers?\s*watching", re.IGNORECASE)),
    ("people_watching", re.compile(r"([0-9,]+)\s*people\s*watching", re.IGNORECASE)),
)

_LEADING_INT = re.compile(r"^\s*(\d+)")


def is_valid_viewer_count(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if isinstance(value, float) and not math.isfinite(value):
        return False
    return 0 <= value <= MAX_VIEWER_COUNT


def _parse_int(value: Any) -> Optional[int]:
    """
    Lenient integer parse: ints, finite floats and strings with a leading
    digit run ("9876", "9876 viewers") are accepted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = _LEADING_INT.match(value)
        return int(match.group(1)) if match else None
    return None


def _get(node: Any, *path: str) -> Any:
    for key in path:
        if isinstance(node, dict):
            node = node.get(key)
        else:
            node = getattr(node, key, None)
        if node is None:
            return None
    return node


def parse_watching_text(text: str) -> Optional[Dict[str, Any]]:
    for name, pattern in WATCHING_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        count = _parse_int(match.group(1).replace(",", ""))
        if count is not None and count >= 0:
            return {"count": count, "pattern": name, "matched_text": match.group(0)}
    return None


class YouTubeViewerExtractor:
    """
    Strategy chain over a video-info document.

    Each strategy returns (count | None, raw_data). Errors raised inside a
    strategy are recorded under raw_data[strategy]["error"] and the chain
    advances.
    """

    def __init__(self, *, strategies: Optional[Iterable[str]] = None):
        self.strategies: List[str] = list(strategies or DEFAULT_STRATEGIES)
        unknown = [s for s in self.strategies if s not in DEFAULT_STRATEGIES]
        if unknown:
            raise ValueError(f"Unknown viewer extraction strategies: {unknown}")

    # ------------------------------------------------------------

    def extract_concurrent_viewers(
        self,
        video_info: Any,
        *,
        strategies: Optional[Iterable[str]] = None,
    ) -> Dict[str, Any]:
        order = list(strategies) if strategies is not None else self.strategies

        result: Dict[str, Any] = {
            "count": 0,
            "strategy": None,
            "success": False,
            "metadata": {
                "strategies_attempted": [],
                "raw_data": {},
            },
        }
        metadata = result["metadata"]

        if not video_info:
            metadata["error"] = "No video info provided"
            return result

        handlers = {
            STRATEGY_VIEW_TEXT: self._from_view_text,
            STRATEGY_VIDEO_DETAILS: self._from_video_details,
            STRATEGY_BASIC_INFO: self._from_basic_info,
        }

        for name in order:
            handler = handlers.get(name)
            if handler is None:
                continue

            metadata["strategies_attempted"].append(name)
            raw: Dict[str, Any] = {}
            try:
                count = handler(video_info, raw)
            except Exception as e:
                raw["error"] = str(e)
                count = None
            metadata["raw_data"][name] = raw

            if count is not None and is_valid_viewer_count(count):
                result["count"] = count
                result["strategy"] = name
                result["success"] = True
                return result

        log.debug(f"[youtube] No viewer count extracted (tried {metadata['strategies_attempted']})")
        return result

    # ------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------

    @staticmethod
    def _from_view_text(video_info: Any, raw: Dict[str, Any]) -> Optional[int]:
        text = _get(video_info, "primary_info", "view_count", "view_count", "text")
        raw["view_text"] = text
        if not isinstance(text, str) or not text:
            return None

        parsed = parse_watching_text(text)
        if not parsed:
            return None

        raw["pattern"] = parsed["pattern"]
        raw["matched_text"] = parsed["matched_text"]
        return parsed["count"]

    @staticmethod
    def _from_video_details(video_info: Any, raw: Dict[str, Any]) -> Optional[int]:
        details = _get(video_info, "video_details")
        if details is None:
            return None

        for field_name in ("viewer_count", "concurrent_viewers"):
            value = _get(details, field_name)
            raw[field_name] = value
            count = _parse_int(value)
            if count is not None and count >= 0:
                raw["source_field"] = field_name
                return count
        return None

    @staticmethod
    def _from_basic_info(video_info: Any, raw: Dict[str, Any]) -> Optional[int]:
        basic = _get(video_info, "basic_info")
        if basic is None:
            return None

        is_live = _get(basic, "is_live")
        raw["is_live"] = is_live
        if is_live is not True:
            return None

        count = _parse_int(_get(basic, "view_count"))
        raw["view_count"] = count
        if count is None or count < 0:
            return None
        return count

    # ------------------------------------------------------------

    def get_capabilities(self) -> Dict[str, Any]:
        return {
            "strategies": list(DEFAULT_STRATEGIES),
            "configured_order": list(self.strategies),
            "patterns": [name for name, _ in WATCHING_PATTERNS],
            "valid_range": [0, MAX_VIEWER_COUNT],
        }


__all__ = [
    "YouTubeViewerExtractor",
    "DEFAULT_STRATEGIES",
    "MAX_VIEWER_COUNT",
    "is_valid_viewer_count",
    "parse_watching_text",
]
