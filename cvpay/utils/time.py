import time


def now_ms() -> int:
    return int(time.time() * 1000)


def deadline_ms(seconds: float, start_ms: int = 0) -> int:
    """Epoch-ms instant `seconds` after start_ms (default: now)."""
    return int(start_ms or now_ms()) + int(float(seconds) * 1000)
