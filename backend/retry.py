import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Identity ids whose default profile is currently being written by this process.
_inflight_heals: Dict[str, "asyncio.Future[Any]"] = {}


async def fetch_with_retry(
    lookup: Callable[[], Awaitable[Optional[Any]]],
    attempts: int = 3,
    delay_ms: int = 800,
    label: str = "record"
) -> Optional[Any]:
    """
    Poll ``lookup`` until it returns a value or attempts run out.
    Absorbs read-after-write lag on freshly created documents; lookup errors
    count as a miss.
    """
    attempts = max(1, attempts)
    for attempt in range(attempts):
        try:
            found = await lookup()
            if found is not None:
                return found
        except Exception as e:
            logger.warning(f"Retry {attempt + 1} for {label} failed: {e}")
        if attempt < attempts - 1:
            await asyncio.sleep(delay_ms / 1000)
    return None


async def fetch_or_heal(
    key: str,
    lookup: Callable[[], Awaitable[Optional[Any]]],
    make_default: Callable[[], Any],
    persist: Callable[[Any], Awaitable[Optional[Any]]],
    attempts: int = 3,
    delay_ms: int = 800
) -> Any:
    """
    Bounded-retry lookup that falls back to writing a default record.

    ``persist`` must be an idempotent upsert by ``key`` (insert-if-absent or
    merge, never a blind overwrite) and may return the record actually stored.
    Concurrent heals for the same key inside this process share one write.
    """
    found = await fetch_with_retry(lookup, attempts=attempts, delay_ms=delay_ms, label=key)
    if found is not None:
        return found

    pending = _inflight_heals.get(key)
    if pending is not None:
        return await asyncio.shield(pending)

    future = asyncio.get_running_loop().create_future()
    _inflight_heals[key] = future
    try:
        # A writer may have landed while we were waiting out the retries.
        found = await lookup()
        if found is None:
            found = make_default()
            logger.info(f"No record for {key} after {attempts} attempts, writing default")
            stored = await persist(found)
            if stored is not None:
                found = stored
        future.set_result(found)
        return found
    except Exception as e:
        future.set_exception(e)
        # Marked retrieved so a heal with no waiters does not log an unretrieved error.
        future.exception()
        raise
    finally:
        _inflight_heals.pop(key, None)
