import asyncio
import logging
from datetime import datetime
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from .errors import SessionBusyError
from .identity import is_session_key
from .models import SessionLocks, SessionStore

logger = logging.getLogger(__name__)


def sweep_stale_sessions(
    store: SessionStore,
    locks: SessionLocks,
    threshold: float,
    now: Optional[datetime] = None,
) -> int:
    """
    Remove uploads that have not received a chunk for ``threshold`` seconds.

    Sessions with a chunk in flight are left alone. Files without a session
    record (interrupted first chunks, finalized files nobody picked up) are
    judged by their modification time.

    Returns the number of files removed.
    """
    now = now or datetime.now()
    removed = 0

    for session in store.all():
        if (now - session.last_updated).total_seconds() <= threshold:
            continue
        try:
            with locks.hold(session.session_key):
                artifact = store.artifact_path(session.session_key)
                size = session.bytes_written
                if artifact.exists():
                    artifact.unlink()
                    removed += 1
                store.delete(session.session_key)
        except SessionBusyError:
            continue
        logger.info(
            "Removed abandoned upload of %r (%d/%d bytes)",
            session.original_filename,
            size,
            session.declared_total_size,
        )

    for path in store.temp_dir.iterdir():
        if not path.is_file() or path.name.endswith(store.suffix):
            continue
        session_key = path.name.split(".", 1)[0]
        if is_session_key(session_key) and (
            locks.is_held(session_key) or store.get(session_key) is not None
        ):
            continue
        try:
            age = now.timestamp() - path.stat().st_mtime
        except FileNotFoundError:
            # picked up by the persister meanwhile
            continue
        if age > threshold:
            path.unlink(missing_ok=True)
            removed += 1
            logger.info("Removed orphaned upload file %s", path.name)

    return removed


async def cleanup_task(store: SessionStore, locks: SessionLocks, interval: int, threshold: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(sweep_stale_sessions, store, locks, threshold)
        except OSError:
            logger.exception("Stale upload sweep failed")
