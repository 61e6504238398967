from dataclasses import asdict

from fastapi import APIRouter, Depends

from cvpay.api.auth import require_admin
from cvpay.store.pending_repo import load_pending
import cvpay.observability.metrics as metrics

router = APIRouter(prefix="/admin", tags=["admin"])

@router.get("/pending/{context_id}")
def get_pending_record(context_id: str, _=Depends(require_admin)):
    """What a reload of this context would resume (support lookups)."""
    record = load_pending(context_id)
    return {"contextId": context_id, "pending": asdict(record) if record else None}

@router.get("/metrics")
def get_metrics(_=Depends(require_admin)):
    """Payment counters and confirmation latency, backed by Redis."""
    return metrics.get_payment_snapshot()
