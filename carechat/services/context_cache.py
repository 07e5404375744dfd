"""Per-user document context shared between upload and chat turns."""
import threading
from typing import Dict, Optional


class ContextCache:
    """
    Process-wide mapping of user ID to the text of their last upload.

    One slot per user, last writer wins. Entries live for the process
    lifetime: no expiry and no size bound.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, str] = {}

    def put(self, user_id: str, text: str) -> None:
        with self._lock:
            self._entries[user_id] = text

    def get(self, user_id: str) -> Optional[str]:
        with self._lock:
            return self._entries.get(user_id)

    def clear(self, user_id: str) -> None:
        with self._lock:
            self._entries.pop(user_id, None)


# Shared by the upload route and the socket gateway
context_cache = ContextCache()
