# ilovevideo/sweeper.py
"""Backstop cleanup for the scratch directories.

Requests delete their own files; this only catches what a crash or an
unexpected exit path left behind.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def sweep_scratch(dirs: Iterable[Path], max_age_sec: float, now: Optional[float] = None) -> int:
    """Delete regular files older than ``max_age_sec``. Returns how many went."""
    now = time.time() if now is None else now
    removed = 0
    for d in dirs:
        try:
            entries = list(Path(d).iterdir())
        except FileNotFoundError:
            continue
        for p in entries:
            try:
                st = p.stat()
                if not p.is_file() or now - st.st_mtime <= max_age_sec:
                    continue
                p.unlink()
                removed += 1
            except FileNotFoundError:
                # request-scoped cleanup got there first
                continue
            except OSError as e:
                logger.warning("sweeper could not remove %s: %s", p, e)
    if removed:
        logger.info("retention sweep removed %d stale file(s)", removed)
    return removed


async def retention_loop(dirs: Iterable[Path], interval_sec: float, max_age_sec: float) -> None:
    dirs = list(dirs)
    while True:
        await asyncio.sleep(interval_sec)
        try:
            await asyncio.to_thread(sweep_scratch, dirs, max_age_sec)
        except Exception:
            logger.exception("retention sweep failed")
