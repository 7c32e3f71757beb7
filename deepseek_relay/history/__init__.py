from .conversation_utils import (
    build_conversation,
    extract_completed_messages,
    extract_recent_completed_messages,
    map_role,
)
from .models import HistoryEntry

__all__ = [
    "HistoryEntry",
    "build_conversation",
    "extract_completed_messages",
    "extract_recent_completed_messages",
    "map_role",
]
