"""
Payment Metrics & Snapshot
--------------------------
Lightweight Redis counters for the payment lifecycle plus a single snapshot
function consumed by /admin/metrics. Writes are best-effort: a Redis outage
must never break a payment in flight, so failures are logged and dropped.
"""
from __future__ import annotations
import time
from typing import List, Tuple
from redis.exceptions import RedisError
from cvpay.store.redis_conn import get_redis
from cvpay.settings import settings
from cvpay.observability.logging import log

K_PREFIX = "metrics:payment:"
K_CONFIRM_LAT = "metrics:payment:confirm_latencies"   # LPUSH ms
K_FAILED_RECENT = "metrics:payment:failed_recent"     # LPUSH reference (trim window)

# Counter names accepted by increment()
COUNTERS = (
    "initiated",
    "initiation_failed",
    "confirmed",
    "failed",
    "timed_out",
    "cancelled",
    "poll_attempts",
    "poll_errors",
    "delivery_saved",
    "delivery_failed",
)

_MAX_SAMPLES = 500

def _percentile(data: List[float], p: float) -> float:
    """Deterministic percentile (nearest-rank on sorted data)."""
    if not data:
        return 0.0
    d = sorted(data)
    k = max(1, int(round(p * len(d))))
    return float(d[k - 1])

def _now_s() -> int:
    return int(time.time())

def increment(name: str, amount: int = 1) -> None:
    if not settings.METRICS_ENABLED:
        return
    if name not in COUNTERS:
        raise ValueError(f"Unknown payment counter: {name}")
    try:
        get_redis().incr(f"{K_PREFIX}{name}", amount)
    except RedisError as e:
        log(event="metrics_write_failed", counter=name, error=str(e)[:200])

def record_confirm_latency(ms: int) -> None:
    if not settings.METRICS_ENABLED:
        return
    try:
        r = get_redis()
        r.lpush(K_CONFIRM_LAT, int(ms))
        r.ltrim(K_CONFIRM_LAT, 0, _MAX_SAMPLES - 1)
    except RedisError as e:
        log(event="metrics_write_failed", counter="confirm_latency", error=str(e)[:200])

def record_failed_payment(reference: str) -> None:
    """Track recent failed references for support lookups."""
    if not settings.METRICS_ENABLED or not reference:
        return
    try:
        r = get_redis()
        r.lpush(K_FAILED_RECENT, reference)
        r.ltrim(K_FAILED_RECENT, 0, 49)  # keep last 50
    except RedisError as e:
        log(event="metrics_write_failed", counter="failed_recent", error=str(e)[:200])

def _read_latency_list(r) -> List[float]:
    out: List[float] = []
    for x in r.lrange(K_CONFIRM_LAT, 0, _MAX_SAMPLES - 1) or []:
        try:
            out.append(float(x) / 1000.0)  # seconds
        except (TypeError, ValueError):
            continue
    return out

def _p50_p95(latencies_s: List[float]) -> Tuple[float, float]:
    if not latencies_s:
        return 0.0, 0.0
    return _percentile(latencies_s, 0.50), _percentile(latencies_s, 0.95)

def get_payment_snapshot() -> dict:
    """
    Return a dict shaped for /admin/metrics.
    Fields:
      - one integer per counter in COUNTERS
      - confirmation_success_rate: confirmed / resolved sessions (percent)
      - p50_confirm_latency, p95_confirm_latency (seconds, initiation -> Confirmed)
      - recent_failed_references
    """
    r = get_redis()
    counts = {name: int(r.get(f"{K_PREFIX}{name}") or 0) for name in COUNTERS}

    resolved = counts["confirmed"] + counts["failed"] + counts["timed_out"]
    rate = (counts["confirmed"] / resolved) * 100.0 if resolved > 0 else 0.0

    p50, p95 = _p50_p95(_read_latency_list(r))
    recent_failed = [str(x) for x in (r.lrange(K_FAILED_RECENT, 0, 19) or [])]

    return {
        **counts,
        "confirmation_success_rate": round(rate, 3),
        "p50_confirm_latency": round(p50, 3),
        "p95_confirm_latency": round(p95, 3),
        "recent_failed_references": recent_failed,
        "snapshot_at": _now_s(),
    }
