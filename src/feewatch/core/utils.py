from __future__ import annotations

import asyncio
import os
import random
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(name: str, max_len: int = 80) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:max_len].rstrip("-") or "unnamed"


def backoff_delay(attempt: int, base_seconds: float) -> float:
    # attempt is zero-based: 1x, 2x, 4x, ...
    return base_seconds * (2 ** max(0, attempt))


async def async_backoff_sleep(attempt: int, base_seconds: float) -> None:
    await asyncio.sleep(backoff_delay(attempt, base_seconds))


async def random_delay(min_ms: int, max_ms: int) -> int:
    delay_ms = random.randint(int(min_ms), int(max(min_ms, max_ms)))
    await asyncio.sleep(delay_ms / 1000.0)
    return delay_ms


def atomic_rename(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    os.replace(src, dst)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))
