"""
Request and response models for the HTTP API.

Field names follow the JSON the POS and the printers send (camelCase).
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from typing_extensions import Literal


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Correlation(_CamelModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    table_id: Optional[str] = Field(None, alias="tableId")


class EnqueueRequest(_CamelModel):
    printer_id: str = Field(..., alias="printerId")
    idempotency_key: str = Field(..., alias="idempotencyKey")
    payload: str
    content_type: str = Field("text/plain", alias="contentType")
    job_type: str = Field("receipt", alias="jobType")
    priority: int = 0
    max_retries: Optional[int] = Field(None, alias="maxRetries")
    payload_encoding: Literal["utf-8", "base64"] = Field("utf-8", alias="payloadEncoding")
    correlation: Optional[Correlation] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EnqueueResponse(_CamelModel):
    job_id: str = Field(..., alias="jobId")
    status: str
    created: bool


class ReasonRequest(_CamelModel):
    reason: Optional[str] = None


class CancelResponse(_CamelModel):
    job_id: str = Field(..., alias="jobId")
    status: Optional[str] = None
    changed: bool


class PollStatusResponse(_CamelModel):
    job_ready: bool = Field(..., alias="jobReady")
    media_types: Optional[List[str]] = Field(None, alias="mediaTypes")
    job_token: Optional[str] = Field(None, alias="jobToken")
