import json
from dataclasses import asdict, fields as dc_fields
from typing import Optional

from cvpay.settings import settings
from cvpay.store.redis_conn import get_redis
from cvpay.store.models import PendingRecord
from cvpay.observability.logging import log


def _key(context_id: str) -> str:
    return f"{settings.PENDING_KEY_PREFIX}{context_id}"


def _filter_record_kwargs(data: dict) -> dict:
    """
    Drop unknown fields so PendingRecord(**kwargs) never explodes on records
    written by an older build.
    """
    allowed = {f.name for f in dc_fields(PendingRecord)}
    return {k: v for k, v in data.items() if k in allowed}


def load_pending(context_id: str) -> Optional[PendingRecord]:
    r = get_redis()
    raw = r.get(_key(context_id))
    if not raw:
        return None

    try:
        data = json.loads(raw)
    except ValueError:
        data = None
    if not isinstance(data, dict):
        # Unreadable slot cannot be resumed; free it for the next payment
        log(event="pending_record_corrupt", contextId=context_id)
        r.delete(_key(context_id))
        return None

    data = _filter_record_kwargs(data)
    if not data.get("reference") and not data.get("transactionId"):
        log(event="pending_record_incomplete", contextId=context_id)
        r.delete(_key(context_id))
        return None
    data.setdefault("reference", "")
    data["contextId"] = context_id
    return PendingRecord(**data)


def save_pending(record: PendingRecord) -> None:
    """Overwrites whatever the slot held before."""
    r = get_redis()
    r.set(_key(record.contextId), json.dumps(asdict(record)))
    log(
        event="pending_record_saved",
        contextId=record.contextId,
        reference=record.reference,
        transactionId=record.transactionId,
        mode=record.mode,
    )


def clear_pending(context_id: str) -> bool:
    r = get_redis()
    removed = bool(r.delete(_key(context_id)))
    if removed:
        log(event="pending_record_cleared", contextId=context_id)
    return removed
