from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

NoticeLevel = Literal["info", "success", "warning", "error"]
WidgetEvent = Literal["success", "pending", "close"]

class CheckoutRequest(BaseModel):
    # Read-only snapshot of the CV form at the moment "Download" was pressed
    cvData: Dict[str, Any]

class WidgetEventRequest(BaseModel):
    response: Optional[Dict[str, Any]] = None

class Notice(BaseModel):
    level: NoticeLevel
    message: str
    ts: int

class CheckoutSnapshot(BaseModel):
    contextId: str
    state: str
    active: bool
    reference: Optional[str] = None
    transactionId: Optional[str] = None
    sessionState: Optional[str] = None
    paymentUrl: Optional[str] = None
    artifactUrl: Optional[str] = None
    widget: Optional[Dict[str, Any]] = None
    deliveryStatus: Optional[str] = None
    error: Optional[str] = None
    notices: List[Notice] = Field(default_factory=list)

class ErrorResponse(BaseModel):
    status: Literal["error"] = "error"
    errorType: str
    message: str
    field: Optional[str] = None
    reference: Optional[str] = None
