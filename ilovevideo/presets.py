# ilovevideo/presets.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

ALLOWED_EXTENSIONS = (".mp4", ".mov", ".avi", ".webm", ".mkv", ".m4v", ".3gp")

# shared tail of every H.264/AAC MP4 we emit
_MP4_TAIL = ("-movflags", "+faststart", "-pix_fmt", "yuv420p", "-threads", "0")


@dataclass(frozen=True)
class Preset:
    id: str
    args: Tuple[str, ...]
    media_type: str = "video/mp4"


def _h264(crf: int, audio_kbps: int, vf: Optional[str] = None) -> Tuple[str, ...]:
    args = ["-c:v", "libx264", "-preset", "fast", "-crf", str(crf)]
    if vf:
        args += ["-vf", vf]
    args += ["-c:a", "aac", "-b:a", f"{audio_kbps}k"]
    return tuple(args) + _MP4_TAIL


# ------------ Compression presets ------------
COMPRESS_PRESETS: Dict[str, Preset] = {
    # original resolution unless wider than 1280px
    "whatsapp": Preset("whatsapp", _h264(28, 96, "scale='min(1280,iw)':-2")),
    "instagram": Preset("instagram", _h264(23, 128, "scale=-2:1080")),
    "tiktok": Preset("tiktok", _h264(25, 128, "scale=-2:1080")),
    # near-lossless, no scaling
    "max-quality": Preset("max-quality", _h264(18, 192)),
}
DEFAULT_COMPRESS_PRESET = "whatsapp"


def compress_preset(name: Optional[str]) -> Preset:
    """Look up a compression preset; unknown or empty names get the default."""
    key = (name or "").strip().lower()
    return COMPRESS_PRESETS.get(key, COMPRESS_PRESETS[DEFAULT_COMPRESS_PRESET])


# ------------ Resize ------------
class FrameMode:
    FIT = "fit"
    CROP = "crop"


RESIZE_CRF = {
    "visually-lossless": 18,
    "high": 23,
    "balanced": 28,
}
DEFAULT_RESIZE_QUALITY = "high"

MIN_DIMENSION = 16
MAX_DIMENSION = 7680
DEFAULT_WIDTH = 1080
DEFAULT_HEIGHT = 1920


def clamp_dimension(raw, default: int) -> int:
    """Parse a caller-supplied dimension into an even int within bounds.

    Anything unparsable falls back to ``default``. libx264 with yuv420p
    refuses odd sizes, so the result is rounded down to an even number.
    """
    try:
        value = int(float(str(raw).strip()))
    except (TypeError, ValueError):
        value = default
    value = max(MIN_DIMENSION, min(MAX_DIMENSION, value))
    return value - value % 2


def resize_preset(width, height, mode: Optional[str], quality: Optional[str]) -> Preset:
    """Build the argument list for a resize job.

    Only the clamped integers and whitelisted fragments reach the filter
    graph; ``mode`` and ``quality`` are matched against fixed tables.
    """
    w = clamp_dimension(width, DEFAULT_WIDTH)
    h = clamp_dimension(height, DEFAULT_HEIGHT)
    crf = RESIZE_CRF.get((quality or "").strip().lower(), RESIZE_CRF[DEFAULT_RESIZE_QUALITY])

    if (mode or "").strip().lower() == FrameMode.CROP:
        vf = f"scale={w}:{h}:force_original_aspect_ratio=increase,crop={w}:{h}"
    else:
        vf = (
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:black"
        )
    return Preset(f"resize-{w}x{h}", _h264(crf, 128, vf))


def allowed_upload(filename: Optional[str]) -> bool:
    if not filename:
        return False
    name = filename.lower()
    return any(name.endswith(ext) for ext in ALLOWED_EXTENSIONS)


def upload_suffix(filename: str) -> str:
    name = filename.lower()
    for ext in ALLOWED_EXTENSIONS:
        if name.endswith(ext):
            return ext
    return ".src"
