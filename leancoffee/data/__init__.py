"""
Data access layer for the session store.
"""

from .session_store import SessionStore, utcnow

__all__ = ["SessionStore", "utcnow"]
