"""Collaborator hooks consulted by the gateway.

``Authorizer`` runs once before a stream is resolved; a falsy result turns the
request into a 403. ``StreamEventHook`` receives lifecycle events
(``start``, ``complete``, ``aborted``, ``error``, ``download``) and must not
block.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from litestar import Request

    Authorizer = Callable[[Request], Awaitable[bool]]
    StreamEventHook = Callable[[str, str, str, str], None]

EVENT_LOG = logging.getLogger("movie_gateway.events")


async def allow_all(request: Request) -> bool:
    return True


def log_stream_event(item_id: str, quality: str, event: str, detail: str) -> None:
    EVENT_LOG.info(
        "stream event item=%s quality=%s event=%s detail=%s",
        item_id,
        quality,
        event,
        detail,
    )
