"""
api/session.py — multi-user in-memory sessions (cookie based)

Each browser gets a UUID session id holding its own login and practice
engine. Sessions expire after SESSION_TTL seconds without access; expired
ones are handed back by cleanup_expired() so their engine and HTTP client
can be closed on the event loop.
"""

import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from config import SESSION_TTL

_lock = threading.Lock()
_sessions: Dict[str, Dict[str, Any]] = {}
_timestamps: Dict[str, float] = {}


def _new_state() -> Dict[str, Any]:
    return {
        "identity": None,
        "client": None,
        "engine": None,
    }


def create_session() -> str:
    """Create a new session and return its id."""
    sid = uuid.uuid4().hex
    with _lock:
        _sessions[sid] = _new_state()
        _timestamps[sid] = time.time()
    return sid


def get_session(sid: str) -> Optional[Dict[str, Any]]:
    """Session data for `sid`; None when unknown or expired."""
    with _lock:
        if sid not in _sessions:
            return None
        if time.time() - _timestamps[sid] > SESSION_TTL:
            return None
        _timestamps[sid] = time.time()  # refresh on access
        return _sessions[sid]


def get(sid: str, key: str, default=None):
    session = get_session(sid)
    if session is None:
        return default
    return session.get(key, default)


def put(sid: str, key: str, value) -> None:
    with _lock:
        if sid in _sessions:
            _sessions[sid][key] = value
            _timestamps[sid] = time.time()


def reset(sid: str) -> Optional[Dict[str, Any]]:
    """Log the session out. Returns the previous state so the caller can close it."""
    with _lock:
        if sid not in _sessions:
            return None
        previous = _sessions[sid]
        _sessions[sid] = _new_state()
        _timestamps[sid] = time.time()
        return previous


def cleanup_expired() -> List[Dict[str, Any]]:
    """Remove expired sessions and return their states."""
    now = time.time()
    removed: List[Dict[str, Any]] = []
    with _lock:
        expired = [sid for sid, ts in _timestamps.items() if now - ts > SESSION_TTL]
        for sid in expired:
            removed.append(_sessions.pop(sid))
            del _timestamps[sid]
    return removed


async def close_state(state: Optional[Dict[str, Any]]) -> None:
    """Stop the engine's countdown and release its HTTP connections."""
    if not state:
        return
    engine = state.get("engine")
    if engine is not None:
        engine.close()
    client = state.get("client")
    if client is not None:
        await client.aclose()
