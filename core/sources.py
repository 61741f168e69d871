# core/sources.py
"""
Source URL handling: recognize, canonicalize and name YouTube sources.

Normalization keeps only the 11-character video id, so playlist, timestamp
and tracking parameters never reach an extraction backend.
"""

import re
from dataclasses import dataclass
from typing import Final, Optional
from urllib.parse import parse_qs, urlsplit
from util.constants import ExternalURIs

VIDEO_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]{11}$")
_PATH_ID_RE: Final[re.Pattern[str]] = re.compile(
    r"^/(?:shorts|embed|live|v)/([A-Za-z0-9_-]{11})(?:[/?#]|$)"
)
_UNSAFE_CHARS_RE: Final[re.Pattern[str]] = re.compile(r'[<>:"/\\|?*\x00-\x1F]')
_WS_RE: Final[re.Pattern[str]] = re.compile(r"\s+")

YOUTUBE_HOSTS: Final[frozenset[str]] = frozenset(
    {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}
)
SHORT_HOSTS: Final[frozenset[str]] = frozenset({"youtu.be", "www.youtu.be"})

MAX_NAME_CHARS: Final[int] = 150
UNKNOWN_TITLE: Final[str] = "Unknown Title"


@dataclass(frozen=True)
class SourceRef:
    video_id: str
    url: str  # canonical watch URL

    @property
    def provisional_name(self) -> str:
        return f"youtube-{self.video_id}"


def extract_video_id(raw: str) -> Optional[str]:
    if not raw:
        return None
    candidate = raw.strip()
    if "://" not in candidate:
        candidate = "https://" + candidate
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme not in ("http", "https"):
        return None
    host = (parts.hostname or "").lower()

    if host in SHORT_HOSTS:
        vid = parts.path.lstrip("/").split("/", 1)[0]
        return vid if VIDEO_ID_RE.match(vid) else None

    if host not in YOUTUBE_HOSTS:
        return None

    if parts.path in ("/watch", "/watch/"):
        vid = (parse_qs(parts.query).get("v") or [""])[0]
        return vid if VIDEO_ID_RE.match(vid) else None

    m = _PATH_ID_RE.match(parts.path)
    return m.group(1) if m else None


def normalize_source(raw: str) -> Optional[SourceRef]:
    """Return the canonical reference for a recognized source URL, else None."""
    vid = extract_video_id(raw or "")
    if vid is None:
        return None
    return SourceRef(video_id=vid, url=f"{ExternalURIs.YOUTUBE_WATCH}{vid}")


def sanitize_file_name(name: Optional[str]) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("_", name or "")
    cleaned = _WS_RE.sub(" ", cleaned).strip()[:MAX_NAME_CHARS].strip()
    return cleaned or UNKNOWN_TITLE


def output_file_name(base: str, extension: str) -> str:
    ext = (extension or "webm").lstrip(".").lower()
    return f"{sanitize_file_name(base)}.{ext}"
