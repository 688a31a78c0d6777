"""
Registry of blob-backed preview handles for photos.
"""

import logging
import threading
import uuid
from typing import Dict, Iterable, Optional, Set

from .models import Memory

logger = logging.getLogger(__name__)

BLOB_PREFIX = "blob:"

def referenced_handles(memories: Iterable[Memory]) -> Set[str]:
    handles = set()
    for memory in memories:
        for photo in memory.photos:
            if photo.handle:
                handles.add(photo.handle)
        if memory.source and memory.source.handle:
            handles.add(memory.source.handle)
    return handles

class PreviewCache:
    """Hands out blob: handles for photo bytes and frees them on revoke."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def create(self, data: bytes) -> str:
        handle = f"{BLOB_PREFIX}{uuid.uuid4()}"
        with self._lock:
            self._blobs[handle] = data
        return handle

    def get(self, handle: str) -> Optional[bytes]:
        with self._lock:
            return self._blobs.get(handle)

    def revoke(self, handle: str):
        with self._lock:
            self._blobs.pop(handle, None)

    def revoke_unreferenced(self, memories: Iterable[Memory], keep: Iterable[str] = ()) -> int:
        """Revoke every handle no memory (and nothing in keep) refers to any more."""
        live = referenced_handles(memories) | set(keep)
        with self._lock:
            stale = [h for h in self._blobs if h.startswith(BLOB_PREFIX) and h not in live]
            for handle in stale:
                del self._blobs[handle]
        if stale:
            logger.debug(f"Revoked {len(stale)} preview handles")
        return len(stale)

    def __len__(self):
        with self._lock:
            return len(self._blobs)
