#!/usr/bin/env python
"""Follow a live `_changes` feed until a number of changes has been received."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from typing import Any, Optional

from couch_changes.config import load_settings
from couch_changes.feed.follower import ChangesFollower
from couch_changes.service import attach_logging_handlers, build_follower

logger = logging.getLogger("changes_smoke")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--count",
        type=int,
        default=10,
        help="stop after this many changes (default: 10)",
    )
    parser.add_argument(
        "--since",
        default=None,
        help="override the starting cursor (default: settings/checkpoint)",
    )
    parser.add_argument(
        "--skip-views",
        action="store_true",
        help="listen directly without running the configured view queries",
    )
    return parser.parse_args()


async def _follow(
    follower: ChangesFollower, count: int, since: Optional[str], skip_views: bool
) -> int:
    received = 0
    stop_event = asyncio.Event()

    def _on_change(record: Any) -> None:
        nonlocal received
        received += 1
        print(json.dumps(record, sort_keys=True))
        if received >= count:
            follower.disable_retry()
            stop_event.set()

    follower.on("change", _on_change)
    attach_logging_handlers(follower)

    if skip_views:
        task = asyncio.ensure_future(follower.listen(since))
    else:
        task = asyncio.ensure_future(follower.query_and_listen())

    stopper = asyncio.ensure_future(stop_event.wait())
    done, _ = await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    if task not in done:
        task.cancel()
    stopper.cancel()
    await asyncio.gather(task, stopper, return_exceptions=True)
    return received


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    args = _parse_args()
    settings = load_settings()
    follower = build_follower(settings)

    async def _run() -> int:
        async with follower:
            return await _follow(follower, args.count, args.since, args.skip_views)

    received = asyncio.run(_run())
    logger.info("received %d changes; final cursor %s", received, follower.cursor)


if __name__ == "__main__":
    main()
