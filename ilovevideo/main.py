# ilovevideo/main.py
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from . import config
from .identity import IdentityContext, IdentityProvider, Tier, authenticate, resolve_identity
from .presets import ALLOWED_EXTENSIONS, Preset, allowed_upload, compress_preset, resize_preset, upload_suffix
from .sweeper import retention_loop
from .transcode import (
    STDERR_TAIL_CHARS,
    ClientAborted,
    ProcessFailed,
    ScopedStreamingResponse,
    TranscodeError,
    TranscodeJob,
    iter_file,
    run_transcode,
)
from .usage import JsonFileUsageStore, UsageLedger

config.configure_logging()
logger = logging.getLogger(__name__)

# ------------ Config ------------
UPLOAD_DIR = config.UPLOAD_DIR
OUTPUT_DIR = config.OUTPUT_DIR
GUEST_LIMIT = config.GUEST_LIMIT
USER_LIMIT = config.USER_LIMIT
MAX_UPLOAD_MB = config.MAX_UPLOAD_MB
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024
UPLOAD_CHUNK = 1024 * 1024

PAYSTACK_PUBLIC_KEY = config.PAYSTACK_PUBLIC_KEY
PAYSTACK_SECRET_KEY = config.PAYSTACK_SECRET_KEY
PRO_PRICE_CENTS = 499  # $4.99, Paystack wants the minor unit
PRO_CURRENCY = "USD"

RESULT_HEADERS = [
    "X-Original-Size",
    "X-Compressed-Size",
    "X-Savings-Percent",
    "X-Already-Optimized",
]

# Swappable collaborators (tests replace these)
ledger = UsageLedger(JsonFileUsageStore(config.USAGE_FILE))
identity_provider = IdentityProvider(config.SUPABASE_URL, config.SUPABASE_SERVICE_KEY)


# ------------ App ------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "iLoveVideo API starting (ffmpeg=%s, guest=%d/day, user=%d/day, payments %s)",
        config.FFMPEG,
        GUEST_LIMIT,
        USER_LIMIT,
        "configured" if PAYSTACK_SECRET_KEY else "NOT configured",
    )
    sweeper = asyncio.create_task(
        retention_loop(
            [UPLOAD_DIR, OUTPUT_DIR],
            config.RETENTION_INTERVAL_SEC,
            config.RETENTION_MAX_AGE_SEC,
        )
    )
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-User-ID"],
    expose_headers=RESULT_HEADERS,
)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    resp = await call_next(request)
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["Referrer-Policy"] = "no-referrer"
    resp.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    return resp


# ------------ Errors ------------
class ApiError(Exception):
    """Admission/integrity failure with a machine-readable code."""

    def __init__(self, status_code: int, code: str, message: str, **extra) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.extra = extra


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(
        {"error": exc.code, "message": exc.message, **exc.extra},
        status_code=exc.status_code,
    )


@app.exception_handler(TranscodeError)
async def transcode_error_handler(request: Request, exc: TranscodeError):
    if isinstance(exc, ClientAborted):
        # nobody is listening
        return Response(status_code=499)
    body = {"error": exc.code, "message": exc.message}
    if isinstance(exc, ProcessFailed) and exc.detail:
        body["details"] = exc.detail[-STDERR_TAIL_CHARS:]
    return JSONResponse(body, status_code=500)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        {"error": "INTERNAL_ERROR", "message": "Internal server error"},
        status_code=500,
    )


# ------------ Helpers ------------
def limit_for(ctx: IdentityContext) -> Optional[int]:
    if ctx.tier == Tier.PRO:
        return None
    if ctx.tier == Tier.AUTHENTICATED:
        return USER_LIMIT
    return GUEST_LIMIT


async def save_upload(file: UploadFile, dest: Path) -> int:
    written = 0
    with dest.open("wb") as f:
        while True:
            chunk = await file.read(UPLOAD_CHUNK)
            if not chunk:
                break
            written += len(chunk)
            if written > MAX_UPLOAD_BYTES:
                raise ApiError(
                    413, "FILE_TOO_LARGE", f"File too large. Maximum size is {MAX_UPLOAD_MB} MB"
                )
            f.write(chunk)
    if written == 0:
        raise ApiError(400, "EMPTY_FILE", "Uploaded file is empty")
    return written


def result_headers(job: TranscodeJob, result) -> dict:
    headers = {
        "Content-Disposition": f'attachment; filename="ilovevideo-{job.kind}.mp4"',
        "X-Original-Size": str(result.original_size),
        "X-Compressed-Size": str(result.output_size),
        "X-Savings-Percent": str(result.savings_percent),
    }
    if result.already_optimized:
        headers["X-Already-Optimized"] = "true"
    return headers


async def process_upload(
    request: Request,
    video: Optional[UploadFile],
    kind: str,
    preset: Preset,
    size_guard: bool = False,
) -> Response:
    """Admission, quota, transcode and streaming for one upload."""
    if video is None or not video.filename:
        raise ApiError(400, "NO_FILE", "No video file uploaded")
    if not allowed_upload(video.filename):
        raise ApiError(
            400,
            "INVALID_FILE_TYPE",
            "Invalid file type. Use MP4, MOV, AVI, WEBM, MKV, M4V or 3GP",
            allowed=list(ALLOWED_EXTENSIONS),
        )

    job = TranscodeJob.create(
        kind, UPLOAD_DIR, OUTPUT_DIR, suffix=upload_suffix(video.filename), size_guard=size_guard
    )
    job.args = preset.args
    try:
        await save_upload(video, job.input_path)

        ctx = await resolve_identity(request, identity_provider)
        limit = limit_for(ctx)
        # a failed transcode still spends the slot
        admitted, count = await asyncio.to_thread(ledger.claim, ctx.key, limit)
        if not admitted:
            logger.info("daily limit reached for %s (%s, limit=%s)", ctx.key, ctx.tier, limit)
            raise ApiError(429, "LIMIT_REACHED", "Daily limit reached", limit=limit, tier=ctx.tier)
        logger.info("job %s (%s, %s) admitted as use %d for %s", job.job_id, kind, preset.id, count, ctx.key)

        result = await run_transcode(job, is_disconnected=request.is_disconnected)
    except BaseException:
        job.release()
        raise

    return ScopedStreamingResponse(
        iter_file(result.path),
        on_close=job.release,
        media_type=preset.media_type,
        headers=result_headers(job, result),
    )


def verify_paystack_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def user_id_from_reference(reference: str) -> Optional[str]:
    """``ilv-<uuid>-<ms>`` -> ``<uuid>``; anything else -> None."""
    parts = (reference or "").split("-")
    if len(parts) < 7 or parts[0] != "ilv":
        return None
    candidate = "-".join(parts[1:6])
    try:
        uuid.UUID(candidate)
    except ValueError:
        return None
    return candidate


def activate_pro(user_id: str, reference: str) -> None:
    try:
        identity_provider.activate_pro(user_id, reference)
    except Exception:
        logger.exception("failed to activate pro for %s (ref %s)", user_id, reference)
        return
    logger.info("pro activated for user %s (ref %s)", user_id, reference)


# ------------ API ------------
@app.get("/health")
@app.get("/healthz")
def health():
    return {
        "status": "ok",
        "engine": "native FFmpeg",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/my-usage")
async def my_usage(request: Request):
    ctx = await resolve_identity(request, identity_provider)
    count = await asyncio.to_thread(ledger.peek, ctx.key)
    limit = limit_for(ctx)
    return {
        "count": count,
        "limit": limit,
        "remaining": None if limit is None else max(0, limit - count),
        "is_pro": ctx.is_pro,
        "isPro": ctx.is_pro,
    }


@app.post("/api/compress")
async def compress(
    request: Request,
    video: Optional[UploadFile] = File(None),
    preset: Optional[str] = Form(None),
):
    return await process_upload(request, video, "compressed", compress_preset(preset))


@app.post("/api/resize")
async def resize(
    request: Request,
    video: Optional[UploadFile] = File(None),
    width: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    mode: Optional[str] = Form(None),
    quality: Optional[str] = Form(None),
):
    preset = resize_preset(width, height, mode, quality)
    return await process_upload(request, video, "resized", preset, size_guard=True)


@app.post("/api/create-payment")
async def create_payment(request: Request):
    user = await authenticate(request, identity_provider)
    if user is None:
        raise ApiError(401, "AUTH_REQUIRED", "Authentication required")
    return {
        "public_key": PAYSTACK_PUBLIC_KEY,
        "email": user.email,
        "amount": PRO_PRICE_CENTS,
        "currency": PRO_CURRENCY,
        "reference": f"ilv-{user.id}-{int(time.time() * 1000)}",
    }


@app.post("/api/paystack-webhook")
async def paystack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_paystack_signature: Optional[str] = Header(None, alias="x-paystack-signature"),
):
    # verify against the raw bytes before looking at the payload at all
    payload = await request.body()
    if not verify_paystack_signature(payload, x_paystack_signature, PAYSTACK_SECRET_KEY):
        logger.warning("rejected payment webhook with invalid signature")
        raise ApiError(401, "INVALID_SIGNATURE", "Invalid signature")

    try:
        event = json.loads(payload.decode("utf-8") or "{}")
    except ValueError:
        raise ApiError(400, "INVALID_JSON", "Invalid JSON")
    if not isinstance(event, dict):
        raise ApiError(400, "INVALID_JSON", "Invalid JSON")

    if event.get("event") == "charge.success":
        data = event.get("data") or {}
        reference = str(data.get("reference") or "") if isinstance(data, dict) else ""
        user_id = user_id_from_reference(reference)
        if user_id:
            background_tasks.add_task(activate_pro, user_id, reference)
        else:
            logger.warning("charge.success with unrecognised reference %r", reference)

    return {"status": "ok"}
