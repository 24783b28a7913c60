from __future__ import annotations

import time
from datetime import datetime, timezone


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    """Wall clock in epoch milliseconds (cache timestamps use this unit)."""
    return int(time.time() * 1000)
