# core/metadata.py
import asyncio
import logging
from typing import Any, Dict, Optional
import yt_dlp
from yt_dlp.utils import DownloadError
from config.settings import settings
from core.sources import sanitize_file_name, UNKNOWN_TITLE
from util.logger import YtDlpLogger

logger = logging.getLogger(__name__)


def probe_options(**extra: Any) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "quiet": True,
        "no_warnings": True,
        "noplaylist": True,
        "skip_download": True,
        "nocheckcertificate": True,
        "http_headers": {"User-Agent": settings.YTDLP_USER_AGENT},
        "logger": YtDlpLogger(),
    }
    opts.update(extra)
    return opts


def probe_info(url: str, **extra: Any) -> Dict[str, Any]:
    """Blocking yt-dlp metadata lookup (no download). Raises DownloadError."""
    with yt_dlp.YoutubeDL(probe_options(**extra)) as ydl:
        info = ydl.extract_info(url, download=False)
    return info or {}


class MetadataResolver:
    """Best-effort display name lookup; never raises."""

    def __init__(self, timeout: float = settings.METADATA_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout

    async def resolve_title(self, url: str) -> Optional[str]:
        try:
            info = await asyncio.wait_for(asyncio.to_thread(probe_info, url), self._timeout)
        except asyncio.TimeoutError:
            logger.warning("metadata.timeout budget=%.0fs", self._timeout)
            return None
        except DownloadError as e:
            logger.warning("metadata.failed err=%s", str(e).split("\n", 1)[0])
            return None
        except Exception as e:
            logger.warning("metadata.error err=%s", type(e).__name__)
            return None
        title = sanitize_file_name(info.get("title"))
        return None if title == UNKNOWN_TITLE else title
