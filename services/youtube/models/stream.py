from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class YouTubeLivestream:
    """
    Lightweight metadata carrier for one live YouTube broadcast.

    A channel may run several of these at once; each gets its own chat
    connection keyed by `video_id`.
    """

    video_id: str
    channel_id: Optional[str] = None
    title: Optional[str] = None
    live_chat_id: Optional[str] = None
    started_at: Optional[str] = None
    concurrent_viewers: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_chat(self) -> bool:
        return bool(self.live_chat_id)
