# util/functions.py
import re
import time
from typing import Optional, Tuple

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


def now_ts() -> int:
    return int(time.time())


def clamp_percent(value: float, ceiling: int = 100) -> int:
    """
    - Floor `value` to an int and clip it into [0, ceiling].
    - Non-numeric garbage (NaN) collapses to 0.
    """
    try:
        pct = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(ceiling, pct))


def parse_byte_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single-range `Range: bytes=start-end` header against an object of `size` bytes.

    Returns None when no header was sent, the inclusive (start, end) pair otherwise.
    Raises ValueError when the range is malformed or cannot be satisfied.
    """
    if not header:
        return None
    m = _RANGE_RE.match(header.strip())
    if not m:
        raise ValueError("malformed range")
    raw_start, raw_end = m.group(1), m.group(2)
    if not raw_start and not raw_end:
        raise ValueError("empty range")
    if not raw_start:
        # Suffix form: last N bytes
        length = int(raw_end)
        if length == 0:
            raise ValueError("empty suffix range")
        start, end = max(0, size - length), size - 1
    else:
        start = int(raw_start)
        end = min(int(raw_end), size - 1) if raw_end else size - 1
    if start >= size or start > end:
        raise ValueError("unsatisfiable range")
    return start, end
