"""
Pydantic models for dashboard API requests.
"""
from pydantic import BaseModel, Field


class AlertStatusUpdate(BaseModel):
    status: str   # PENDING | APPROVED | REJECTED


class ProviderMerge(BaseModel):
    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)


class BatchCancelResponse(BaseModel):
    job_id: str
    cancel_requested: bool
