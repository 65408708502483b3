"""
browser2video - record scripted browser and terminal sessions as narrated videos.

Heavy submodules (Playwright, OpenAI) are imported lazily so that the
compositor and caption tools work without a browser installed.
"""

__all__ = ["Session", "SessionOptions", "SessionResult", "create_session"]


def __getattr__(name):
    """Resolve the session API lazily to avoid importing Playwright at package load."""
    if name in __all__:
        from . import session

        return getattr(session, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
