"""Resilient follower for CouchDB-style continuous `_changes` feeds."""

from .feed import ChangesFollower, RetryOptions, ViewSpec


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = ["main", "ChangesFollower", "RetryOptions", "ViewSpec"]
