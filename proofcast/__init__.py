"""
proofcast - scripted browser scenarios recorded as narrated proof-of-behavior videos.

Avoids importing Playwright and OpenAI at package load time so that the pure
helpers (path generation, composition planning, subtitles, sync audit) stay
importable without a browser install. Use the getters for the heavy classes.
"""

__version__ = "1.0.0"

__all__ = ["get_session_class", "get_collab_session_class"]


def get_session_class():
    """Return Session lazily to avoid importing Playwright."""
    from .session import Session

    return Session


def get_collab_session_class():
    """Return CollabSession lazily to avoid importing Playwright."""
    from .collab import CollabSession

    return CollabSession
