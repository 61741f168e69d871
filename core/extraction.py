# core/extraction.py
"""
Extraction Strategy Chain.

Tries audio-extraction backends in a fixed priority order and hands back the
first live byte stream. Callers never learn which backend won except through
`AudioStream.strategy` (used for logging).

Failure policy:
  - SourceUnavailable: the source itself is bad; stop immediately.
  - StrategyFailed / timeout / zero bytes / unexpected backend error: next strategy.
  - Every strategy failed: ExtractionExhausted.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from typing import AsyncIterator, Awaitable, Callable, Final, List, Optional, Sequence
from config.settings import settings
from util.errors import ExtractionExhausted, PipelineError, SourceUnavailable, StrategyFailed
from util.functions import clamp_percent
from util.timing import timed

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
CloseCallback = Callable[[], Awaitable[None]]

# 100 is reserved for the runner signalling completion.
MAX_EXTRACT_PERCENT: Final[int] = 99
RATE_LIMIT_DELAY_FACTOR: Final[float] = 2.5

# Lower-cased needle -> user-facing reason.
SOURCE_UNAVAILABLE_MARKERS: Final[dict[str, str]] = {
    "video unavailable": "Video is unavailable",
    "private video": "Video is private",
    "sign in to confirm your age": "Video is age-restricted",
    "this video has been removed": "Video has been removed",
    "members-only": "Video is members-only",
    "join this channel to get access": "Video is members-only",
}
RATE_LIMIT_MARKERS: Final[tuple[str, ...]] = ("429", "too many requests", "rate limit", "rate-limit")

EXTENSION_MIME_TYPES: Final[dict[str, str]] = {
    "webm": "audio/webm",
    "weba": "audio/webm",
    "m4a": "audio/mp4",
    "mp4": "audio/mp4",
    "mp3": "audio/mpeg",
    "opus": "audio/ogg",
    "ogg": "audio/ogg",
}


def mime_for_extension(ext: str) -> str:
    return EXTENSION_MIME_TYPES.get((ext or "").lower().lstrip("."), "audio/webm")


def classify_failure(message: str) -> PipelineError:
    """Map a backend's error text onto the chain's failure taxonomy."""
    text = (message or "").lower()
    for needle, reason in SOURCE_UNAVAILABLE_MARKERS.items():
        if needle in text:
            return SourceUnavailable(message, public_message=reason)
    rate_limited = any(m in text for m in RATE_LIMIT_MARKERS)
    return StrategyFailed(message or "extraction failed", rate_limited=rate_limited)


# ---------------- Scratch area ----------------


def make_scratch_dir(label: str) -> str:
    """Fresh directory unique to one attempt; concurrent jobs never share it."""
    root = settings.SCRATCH_DIR or None
    if root:
        os.makedirs(root, exist_ok=True)
    return tempfile.mkdtemp(prefix=f"extract-{label}-", dir=root)


def remove_scratch_dir(path: Optional[str]) -> None:
    if path:
        shutil.rmtree(path, ignore_errors=True)


def copy_cookies(scratch_dir: str) -> Optional[str]:
    """
    Copy the configured (often read-only) cookies file into the attempt's
    scratch dir so the backend may rewrite it. Returns the usable path or None.
    """
    src = settings.YTDLP_COOKIES_FILE
    if not src or not os.path.isfile(src):
        return None
    dst = os.path.join(scratch_dir, "cookies.txt")
    try:
        shutil.copyfile(src, dst)
        os.chmod(dst, 0o600)
        return dst
    except OSError as e:
        logger.warning("extract.cookies.copy_failed err=%s", type(e).__name__)
        return src


# ---------------- Stream ----------------


class AudioStream:
    """
    A live audio byte stream from one strategy.

    Iterate it once. `aclose()` releases everything the strategy holds
    (process, HTTP response, scratch files) and is safe to call repeatedly.
    """

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        *,
        strategy: str,
        extension: str = "webm",
        mime_type: Optional[str] = None,
        title: Optional[str] = None,
        total_bytes: Optional[int] = None,
        on_close: Optional[CloseCallback] = None,
    ) -> None:
        self._iter = chunks.__aiter__()
        self._head: List[bytes] = []
        self._on_close = on_close
        self._closed = False
        self.strategy = strategy
        self.extension = extension.lstrip(".") or "webm"
        self.mime_type = mime_type or mime_for_extension(self.extension)
        self.title = title
        self.total_bytes = total_bytes
        self.stall_timeout: Optional[float] = None

    async def prime(self) -> bool:
        """Pull until the first non-empty chunk is buffered. False means zero bytes."""
        if self._head:
            return True
        async for chunk in self._iter:
            if chunk:
                self._head.append(chunk)
                return True
        return False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while self._head:
            yield self._head.pop(0)
        while True:
            try:
                if self.stall_timeout:
                    chunk = await asyncio.wait_for(self._iter.__anext__(), self.stall_timeout)
                else:
                    chunk = await self._iter.__anext__()
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise StrategyFailed(
                    f"{self.strategy} stalled for {self.stall_timeout}s",
                    public_message="Download stalled",
                )
            if chunk:
                yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._iter, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()

    async def __aenter__(self) -> "AudioStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class ExtractionStrategy(ABC):
    """One backend able to turn a source URL into an audio byte stream."""

    name: str = "strategy"

    @abstractmethod
    async def attempt(self, url: str, on_progress: ProgressCallback) -> AudioStream:
        """
        Start extraction and return a stream (bytes may not have arrived yet).
        Raise SourceUnavailable for a bad source, StrategyFailed otherwise.
        """


# ---------------- Chain ----------------


class ExtractionChain:
    def __init__(
        self,
        strategies: Sequence[ExtractionStrategy],
        *,
        attempt_timeout: float = settings.EXTRACT_ATTEMPT_TIMEOUT_SECONDS,
        stall_timeout: float = settings.EXTRACT_STALL_TIMEOUT_SECONDS,
        fallback_delay: float = settings.EXTRACT_FALLBACK_DELAY_SECONDS,
    ) -> None:
        if not strategies:
            raise ValueError("at least one extraction strategy is required")
        self._strategies = list(strategies)
        self._attempt_timeout = attempt_timeout
        self._stall_timeout = stall_timeout
        self._fallback_delay = fallback_delay

    @property
    def names(self) -> List[str]:
        return [s.name for s in self._strategies]

    async def open(self, url: str, on_progress: ProgressCallback) -> AudioStream:
        """Return the first stream that actually yields bytes."""

        def _forward(pct: int) -> None:
            on_progress(clamp_percent(pct, MAX_EXTRACT_PERCENT))

        last: Optional[StrategyFailed] = None
        for index, strategy in enumerate(self._strategies):
            if index > 0 and self._fallback_delay > 0:
                delay = self._fallback_delay
                if last is not None and last.rate_limited:
                    delay *= RATE_LIMIT_DELAY_FACTOR
                logger.info("extract.fallback.wait next=%s delay=%.1f", strategy.name, delay)
                await asyncio.sleep(delay)

            try:
                with timed(logger, "extract.attempt", strategy=strategy.name):
                    stream = await asyncio.wait_for(
                        self._start(strategy, url, _forward), self._attempt_timeout
                    )
            except SourceUnavailable as e:
                logger.warning("extract.source.unavailable strategy=%s reason=%s", strategy.name, e.public_message)
                raise
            except StrategyFailed as e:
                logger.warning("extract.strategy.failed strategy=%s err=%s", strategy.name, _first_line(str(e)))
                last = e
            except asyncio.TimeoutError:
                logger.warning("extract.strategy.timeout strategy=%s budget=%.0fs", strategy.name, self._attempt_timeout)
                last = StrategyFailed(f"{strategy.name} timed out")
            except Exception as e:
                logger.warning("extract.strategy.crashed strategy=%s err=%s", strategy.name, type(e).__name__)
                last = StrategyFailed(f"{strategy.name}: {type(e).__name__}")
            else:
                logger.info("extract.strategy.ok strategy=%s", strategy.name)
                return stream

        raise ExtractionExhausted(
            f"all strategies failed ({', '.join(self.names)}); last={last}"
        )

    async def _start(
        self, strategy: ExtractionStrategy, url: str, on_progress: ProgressCallback
    ) -> AudioStream:
        stream = await strategy.attempt(url, on_progress)
        try:
            if not await stream.prime():
                raise StrategyFailed(f"{strategy.name} produced zero bytes")
        except BaseException:
            # Timeout/cancel lands here too; never leak a half-open backend.
            await stream.aclose()
            raise
        stream.stall_timeout = self._stall_timeout
        return stream


def _first_line(text: str) -> str:
    return (text or "").strip().splitlines()[0] if text and text.strip() else ""
