import asyncio
import logging
from typing import Any, Awaitable, Coroutine

logger = logging.getLogger(__name__)

# Strong references to running detached tasks; the event loop only keeps weak ones.
_detached: set[asyncio.Task] = set()


async def _guarded(coro: Awaitable[Any], name: str) -> Any:
    try:
        return await coro
    except asyncio.CancelledError:
        logger.info(f"Detached task '{name}' cancelled")
        raise
    except Exception:
        logger.warning(f"Detached task '{name}' failed", exc_info=True)
        return None


def spawn_detached(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """
    Run a coroutine without tying it to the caller.

    Usage:
        spawn_detached(generate_title(conversation_id), name="title")

    Failures are logged and swallowed: the returned task always completes
    with the coroutine's result or None. Must be called from a running loop.
    """
    task = asyncio.create_task(_guarded(coro, name), name=name)
    _detached.add(task)
    task.add_done_callback(_detached.discard)
    return task
