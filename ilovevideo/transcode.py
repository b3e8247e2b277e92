# ilovevideo/transcode.py
"""Run ffmpeg against one uploaded file and hand back what to stream.

A :class:`TranscodeJob` owns exactly two scratch paths. ``release()`` is
the only place they are deleted, it is idempotent, and every exit path
(failure, abort, end of the response stream) ends up calling it.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, Set, Tuple

from fastapi.responses import StreamingResponse

from . import config

logger = logging.getLogger(__name__)

STDERR_TAIL_CHARS = 500
CHUNK_SIZE = 1024 * 1024
DISCONNECT_POLL_SEC = 0.5
KILL_GRACE_SEC = 5.0

# child limits: 30 min CPU, 4 GB address space, 512 fds
CHILD_CPU_SEC = 30 * 60
CHILD_AS_BYTES = 4 * 1024**3
CHILD_NOFILE = 512


# ------------ Errors ------------
class TranscodeError(Exception):
    code = "PROCESSING_FAILED"
    message = "Video processing failed"

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.message)
        self.detail = detail


class BinaryNotFound(TranscodeError):
    code = "SERVER_MISCONFIGURED"
    message = "FFmpeg is not installed on this server"


class ProcessFailed(TranscodeError):
    def __init__(self, exit_code: Optional[int], detail: str = "") -> None:
        super().__init__(detail)
        self.exit_code = exit_code


class OutputMissing(ProcessFailed):
    message = "Output file not created"


class ClientAborted(TranscodeError):
    code = "CLIENT_ABORTED"
    message = "Client disconnected"


# ------------ Job ------------
@dataclass
class TranscodeJob:
    job_id: str
    kind: str
    input_path: Path
    output_path: Path
    args: Tuple[str, ...] = ()
    size_guard: bool = False
    released: bool = field(default=False, repr=False)

    @classmethod
    def create(
        cls,
        kind: str,
        upload_dir: Path,
        output_dir: Path,
        suffix: str = ".src",
        size_guard: bool = False,
    ) -> "TranscodeJob":
        job_id = uuid.uuid4().hex
        stamp = int(time.time() * 1000)
        return cls(
            job_id=job_id,
            kind=kind,
            input_path=Path(upload_dir) / f"{stamp}-{job_id}{suffix}",
            output_path=Path(output_dir) / f"{kind}-{stamp}-{job_id}.mp4",
            size_guard=size_guard,
        )

    def release(self) -> None:
        for p in (self.input_path, self.output_path):
            try:
                p.unlink(missing_ok=True)
            except OSError as e:
                # the retention sweeper will get it
                logger.warning("could not remove %s for job %s: %s", p.name, self.job_id, e)
        self.released = True

    def sanitize(self, text: str) -> str:
        """Strip absolute scratch paths out of diagnostic text."""
        for path, label in (
            (self.input_path, "<input>"),
            (self.output_path, "<output>"),
            (self.input_path.parent, "<scratch>"),
            (self.output_path.parent, "<scratch>"),
        ):
            text = text.replace(str(path), label)
        return text

    def __enter__(self) -> "TranscodeJob":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class TranscodeResult:
    path: Path
    original_size: int
    output_size: int
    already_optimized: bool = False

    @property
    def savings_percent(self) -> int:
        if self.original_size <= 0:
            return 0
        # half-up, not banker's rounding
        pct = (self.original_size - self.output_size) / self.original_size * 100
        return max(0, math.floor(pct + 0.5))


# ------------ Process plumbing ------------
_semaphore: Optional[asyncio.Semaphore] = None
_reapers: Set[asyncio.Task] = set()


@asynccontextmanager
async def _job_slot():
    global _semaphore
    if config.MAX_CONCURRENT_JOBS <= 0:
        yield
        return
    if _semaphore is None:
        _semaphore = asyncio.Semaphore(config.MAX_CONCURRENT_JOBS)
    async with _semaphore:
        yield


def _preexec_ulimits():
    """Resource limits for the ffmpeg child (POSIX only)."""
    try:
        import resource

        resource.setrlimit(resource.RLIMIT_CPU, (CHILD_CPU_SEC, CHILD_CPU_SEC))
        resource.setrlimit(resource.RLIMIT_AS, (CHILD_AS_BYTES, CHILD_AS_BYTES))
        resource.setrlimit(resource.RLIMIT_NOFILE, (CHILD_NOFILE, CHILD_NOFILE))
    except (ImportError, ValueError, OSError):
        pass


def build_command(binary: str, job: TranscodeJob) -> list[str]:
    return [
        binary,
        "-y",
        "-hide_banner",
        "-nostats",
        "-loglevel",
        "error",
        "-i",
        str(job.input_path),
        *job.args,
        str(job.output_path),
    ]


async def _read_tail(stream: asyncio.StreamReader, limit: int = STDERR_TAIL_CHARS) -> str:
    tail = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return tail
        tail = (tail + chunk.decode("utf-8", "ignore"))[-limit:]


async def _reap(proc: asyncio.subprocess.Process) -> None:
    try:
        await asyncio.wait_for(proc.wait(), KILL_GRACE_SEC)
    except asyncio.TimeoutError:
        with suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()


def _terminate(proc: asyncio.subprocess.Process) -> None:
    # must not await: may run inside an already-cancelled task
    if proc.returncode is not None:
        return
    with suppress(ProcessLookupError):
        proc.terminate()
    task = asyncio.get_running_loop().create_task(_reap(proc))
    _reapers.add(task)
    task.add_done_callback(_reapers.discard)


async def _wait_or_abort(
    proc: asyncio.subprocess.Process,
    is_disconnected: Callable[[], Awaitable[bool]],
) -> int:
    waiter = asyncio.ensure_future(proc.wait())
    try:
        while True:
            done, _ = await asyncio.wait({waiter}, timeout=DISCONNECT_POLL_SEC)
            if done:
                return waiter.result()
            if await is_disconnected():
                raise ClientAborted()
    finally:
        if not waiter.done():
            waiter.cancel()


async def _run_process(
    job: TranscodeJob,
    binary: str,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]],
) -> Tuple[int, str]:
    cmd = build_command(binary, job)
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            preexec_fn=_preexec_ulimits if config.FFMPEG_ULIMITS else None,
        )
    except (FileNotFoundError, PermissionError) as e:
        logger.error("ffmpeg binary unusable (%s): %s", binary, e)
        raise BinaryNotFound() from e

    tail_task = asyncio.ensure_future(_read_tail(proc.stderr))
    try:
        if is_disconnected is None:
            rc = await proc.wait()
        else:
            rc = await _wait_or_abort(proc, is_disconnected)
        tail = await tail_task
    except BaseException:
        _terminate(proc)
        tail_task.cancel()
        raise
    return rc, tail


async def run_transcode(
    job: TranscodeJob,
    *,
    binary: Optional[str] = None,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> TranscodeResult:
    """Run ffmpeg for ``job`` and decide which file gets streamed back.

    On any failure the job is released before the error propagates. On
    success the caller owns the job and must release it once the returned
    file has been streamed.
    """
    try:
        async with _job_slot():
            rc, tail = await _run_process(job, binary or config.FFMPEG, is_disconnected)

        if rc != 0:
            detail = job.sanitize(tail)
            logger.error("ffmpeg exited %s for %s job %s: %s", rc, job.kind, job.job_id, detail)
            raise ProcessFailed(rc, detail)
        if not job.output_path.exists():
            logger.error("ffmpeg exited 0 without output for job %s", job.job_id)
            raise OutputMissing(rc, job.sanitize(tail))

        original = job.input_path.stat().st_size
        produced = job.output_path.stat().st_size
        if job.size_guard and produced >= original:
            logger.info(
                "job %s output (%d) not smaller than input (%d); returning original",
                job.job_id,
                produced,
                original,
            )
            job.output_path.unlink(missing_ok=True)
            return TranscodeResult(job.input_path, original, original, already_optimized=True)
        return TranscodeResult(job.output_path, original, produced)
    except ClientAborted:
        logger.info("client went away during job %s; process terminated", job.job_id)
        job.release()
        raise
    except BaseException:
        job.release()
        raise


# ------------ Streaming ------------
async def iter_file(path: Path, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
    f = await asyncio.to_thread(open, path, "rb")
    try:
        while True:
            chunk = await asyncio.to_thread(f.read, chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        f.close()


class ScopedStreamingResponse(StreamingResponse):
    """StreamingResponse that runs ``on_close`` however the send ends.

    Covers normal completion, errors while streaming and the client
    hanging up mid-body (the send task gets cancelled).
    """

    def __init__(self, content, *, on_close: Callable[[], None], **kwargs) -> None:
        super().__init__(content, **kwargs)
        self._on_close = on_close

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            try:
                # Starlette stops iterating without closing; close the file now
                aclose = getattr(self.body_iterator, "aclose", None)
                if aclose is not None:
                    await aclose()
            finally:
                self._on_close()
