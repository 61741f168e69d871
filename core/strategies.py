# core/strategies.py
"""
Concrete extraction backends, in default priority order:

  ytdlp       yt-dlp library, downloads to a scratch dir, then streams the file
  direct      yt-dlp format probe + httpx streaming GET of the audio-only URL
  subprocess  system yt-dlp / youtube-dl binary writing to stdout
"""

import asyncio
import logging
import os
import re
import threading
from typing import Any, AsyncIterator, Dict, Final, List, Optional, Sequence
import anyio
import httpx
import yt_dlp
from yt_dlp.utils import DownloadCancelled, DownloadError
from config.settings import settings
from core.extraction import (
    AudioStream,
    ExtractionChain,
    ExtractionStrategy,
    ProgressCallback,
    classify_failure,
    copy_cookies,
    make_scratch_dir,
    mime_for_extension,
    remove_scratch_dir,
)
from core.metadata import probe_info
from util.errors import PipelineError, StrategyFailed
from util.logger import YtDlpLogger

logger = logging.getLogger(__name__)

_PERCENT_RE: Final[re.Pattern[str]] = re.compile(r"(\d+(?:\.\d+)?)%")
_SKIP_STDERR: Final[tuple[str, ...]] = ("OSError", "Read-only file system")


async def iter_file(path: str, chunk_size: int) -> AsyncIterator[bytes]:
    async with await anyio.open_file(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                return
            yield chunk


class YtDlpLibraryStrategy(ExtractionStrategy):
    name = "ytdlp"

    def __init__(self, chunk_size: int = settings.CHUNK_SIZE_BYTES) -> None:
        self._chunk_size = chunk_size

    def _options(self, scratch: str, hook, cookies: Optional[str]) -> Dict[str, Any]:
        opts: Dict[str, Any] = {
            "format": "bestaudio[ext=webm]/bestaudio[ext=m4a]/bestaudio/best",
            "outtmpl": os.path.join(scratch, "%(id)s.%(ext)s"),
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "nocheckcertificate": True,
            "retries": 3,
            "fragment_retries": 3,
            "socket_timeout": 30,
            "progress_hooks": [hook],
            "http_headers": {"User-Agent": settings.YTDLP_USER_AGENT},
            "logger": YtDlpLogger(strategy=self.name),
        }
        if cookies:
            opts["cookiefile"] = cookies
        return opts

    async def attempt(self, url: str, on_progress: ProgressCallback) -> AudioStream:
        scratch = make_scratch_dir(self.name)
        abort = threading.Event()
        loop = asyncio.get_running_loop()

        def hook(d: Dict[str, Any]) -> None:
            # Runs on the download thread.
            if abort.is_set():
                raise DownloadCancelled("extraction aborted")
            if d.get("status") != "downloading":
                return
            total = d.get("total_bytes") or d.get("total_bytes_estimate")
            done = d.get("downloaded_bytes") or 0
            if total:
                loop.call_soon_threadsafe(on_progress, int(done * 100 / total))

        opts = self._options(scratch, hook, copy_cookies(scratch))

        def _run() -> Dict[str, Any]:
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(url, download=True) or {}

        work = asyncio.ensure_future(asyncio.to_thread(_run))
        try:
            info = await asyncio.shield(work)
        except asyncio.CancelledError:
            abort.set()
            # The thread cannot be interrupted; clean up once it notices the abort.
            work.add_done_callback(lambda _f: remove_scratch_dir(scratch))
            raise
        except DownloadError as e:
            remove_scratch_dir(scratch)
            raise classify_failure(str(e))
        except Exception as e:
            remove_scratch_dir(scratch)
            raise StrategyFailed(f"{self.name}: {type(e).__name__}: {e}")

        path = _downloaded_file(scratch)
        if path is None:
            remove_scratch_dir(scratch)
            raise StrategyFailed(f"{self.name}: no output file")

        ext = os.path.splitext(path)[1].lstrip(".") or "webm"

        async def _cleanup() -> None:
            remove_scratch_dir(scratch)

        return AudioStream(
            iter_file(path, self._chunk_size),
            strategy=self.name,
            extension=ext,
            title=info.get("title"),
            total_bytes=os.path.getsize(path),
            on_close=_cleanup,
        )


def _downloaded_file(scratch: str) -> Optional[str]:
    candidates = [
        os.path.join(scratch, f)
        for f in os.listdir(scratch)
        if f != "cookies.txt" and not f.endswith((".part", ".ytdl"))
    ]
    files = [p for p in candidates if os.path.isfile(p) and os.path.getsize(p) > 0]
    return max(files, key=os.path.getsize) if files else None


def pick_audio_format(formats: Sequence[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Best audio-only format reachable with a plain HTTP GET."""
    usable = [
        f
        for f in formats or []
        if f.get("url")
        and f.get("vcodec") == "none"
        and f.get("acodec") not in (None, "none")
        and str(f.get("protocol") or "https").startswith("http")
    ]
    if not usable:
        return None
    return max(usable, key=lambda f: (f.get("abr") or 0, f.get("filesize") or 0))


class DirectStreamStrategy(ExtractionStrategy):
    name = "direct"

    def __init__(
        self,
        chunk_size: int = settings.CHUNK_SIZE_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._chunk_size = chunk_size
        self._transport = transport

    async def _probe(self, url: str) -> Dict[str, Any]:
        return await asyncio.to_thread(probe_info, url)

    async def attempt(self, url: str, on_progress: ProgressCallback) -> AudioStream:
        try:
            info = await self._probe(url)
        except DownloadError as e:
            raise classify_failure(str(e))

        fmt = pick_audio_format(info.get("formats") or [])
        if fmt is None:
            raise StrategyFailed(f"{self.name}: no audio-only format")

        client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            follow_redirects=True,
            headers=fmt.get("http_headers") or {"User-Agent": settings.YTDLP_USER_AGENT},
            transport=self._transport,
        )
        try:
            response = await client.send(client.build_request("GET", fmt["url"]), stream=True)
            if response.status_code // 100 != 2:
                await response.aclose()
                raise classify_failure(f"{self.name}: HTTP {response.status_code}")
        except httpx.HTTPError as e:
            await client.aclose()
            raise StrategyFailed(f"{self.name}: {type(e).__name__}")
        except BaseException:
            await client.aclose()
            raise

        total = int(response.headers.get("content-length") or fmt.get("filesize") or 0) or None
        chunk_size = self._chunk_size

        async def _chunks() -> AsyncIterator[bytes]:
            received = 0
            try:
                async for chunk in response.aiter_bytes(chunk_size):
                    received += len(chunk)
                    if total:
                        on_progress(received * 100 // total)
                    yield chunk
            except httpx.HTTPError as e:
                raise StrategyFailed(f"{self.name}: {type(e).__name__}")

        async def _close() -> None:
            await response.aclose()
            await client.aclose()

        ext = fmt.get("audio_ext") if fmt.get("audio_ext") not in (None, "none") else fmt.get("ext")
        return AudioStream(
            _chunks(),
            strategy=self.name,
            extension=ext or "webm",
            mime_type=mime_for_extension(ext or "webm"),
            title=info.get("title"),
            total_bytes=total,
            on_close=_close,
        )


class YtDlpProcessStrategy(ExtractionStrategy):
    name = "subprocess"

    def __init__(
        self,
        binaries: Optional[List[str]] = None,
        chunk_size: int = settings.CHUNK_SIZE_BYTES,
    ) -> None:
        self._binaries = binaries if binaries is not None else settings.ytdlp_binaries
        self._chunk_size = chunk_size

    def _args(self, url: str, cookies: Optional[str]) -> List[str]:
        args = [
            "-f", "bestaudio",
            "-o", "-",
            "--no-playlist",
            "--no-check-certificate",
            "--newline",
            "--retries", "3",
            "--fragment-retries", "3",
            "--user-agent", settings.YTDLP_USER_AGENT,
        ]
        if cookies:
            args += ["--cookies", cookies]
        return args + [url]

    async def _spawn(self, args: List[str]) -> Optional[asyncio.subprocess.Process]:
        for binary in self._binaries:
            try:
                proc = await asyncio.create_subprocess_exec(
                    binary,
                    *args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except (FileNotFoundError, PermissionError):
                logger.info("extract.binary.missing binary=%s", binary)
                continue
            logger.info("extract.binary.started binary=%s pid=%s", binary, proc.pid)
            return proc
        return None

    async def attempt(self, url: str, on_progress: ProgressCallback) -> AudioStream:
        scratch = make_scratch_dir(self.name)
        proc = await self._spawn(self._args(url, copy_cookies(scratch)))
        if proc is None:
            remove_scratch_dir(scratch)
            raise StrategyFailed("No youtube downloader found (yt-dlp or youtube-dl)")
        stdout, stderr = proc.stdout, proc.stderr
        if stdout is None or stderr is None:
            proc.kill()
            await proc.wait()
            remove_scratch_dir(scratch)
            raise StrategyFailed(f"{self.name}: downloader pipes unavailable")

        state: Dict[str, Any] = {"failure": None, "last_error": "", "last_pct": -1}

        async def _watch_stderr() -> None:
            async for raw in stderr:
                text = raw.decode("utf-8", errors="replace").strip()
                if not text or any(s in text for s in _SKIP_STDERR):
                    continue
                m = _PERCENT_RE.search(text)
                if m and "[download]" in text:
                    pct = int(float(m.group(1)))
                    if pct > state["last_pct"]:
                        state["last_pct"] = pct
                        on_progress(pct)
                if "ERROR" in text:
                    state["last_error"] = text
                    failure = classify_failure(text)
                    if state["failure"] is None and not isinstance(failure, StrategyFailed):
                        state["failure"] = failure

        watcher = asyncio.create_task(_watch_stderr())
        chunk_size = self._chunk_size

        async def _chunks() -> AsyncIterator[bytes]:
            received = 0
            while True:
                chunk = await stdout.read(chunk_size)
                if not chunk:
                    break
                received += len(chunk)
                yield chunk
            code = await proc.wait()
            await watcher
            failure: Optional[PipelineError] = state["failure"]
            if failure is not None:
                raise failure
            # 1 means "finished with warnings" when bytes did come through.
            if code == 0 or (code == 1 and received > 0):
                return
            raise classify_failure(state["last_error"] or f"{self.name} exited with code {code}")

        async def _close() -> None:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not watcher.done():
                watcher.cancel()
            remove_scratch_dir(scratch)

        return AudioStream(_chunks(), strategy=self.name, extension="webm", on_close=_close)


STRATEGIES: Final[Dict[str, type]] = {
    YtDlpLibraryStrategy.name: YtDlpLibraryStrategy,
    DirectStreamStrategy.name: DirectStreamStrategy,
    YtDlpProcessStrategy.name: YtDlpProcessStrategy,
}


def build_default_chain() -> ExtractionChain:
    unknown = [n for n in settings.strategy_order if n not in STRATEGIES]
    if unknown:
        raise ValueError(f"unknown extraction strategies: {', '.join(unknown)}")
    return ExtractionChain([STRATEGIES[n]() for n in settings.strategy_order])
