# util/timing.py
import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator


def _fields(kv: dict) -> str:
    return "".join(f" {k}={v}" for k, v in kv.items() if v is not None)


@contextmanager
def timed(logger: logging.Logger, name: str, **kv: Any) -> Iterator[None]:
    """
    Usage:
      with timed(logger, "extract.attempt", strategy="ytdlp"):
          ...
    On exit logs "<name>.done ms=<int> key=val ..." at INFO, or
    "<name>.aborted ms=<int> err=<ExcType> ..." at DEBUG when the block raised
    (the caller owns reporting the failure itself).
    """
    started = time.monotonic()
    try:
        yield
    except BaseException as e:
        elapsed = int((time.monotonic() - started) * 1000)
        logger.debug("%s.aborted ms=%d err=%s%s", name, elapsed, type(e).__name__, _fields(kv))
        raise
    elapsed = int((time.monotonic() - started) * 1000)
    logger.info("%s.done ms=%d%s", name, elapsed, _fields(kv))
