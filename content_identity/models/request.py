from pydantic import BaseModel, Field
from typing import List, Optional


class BindingRequest(BaseModel):
    url: str = Field(..., min_length=1)
    manifest_uri: str = Field(..., min_length=1)


class BatchVerificationRequest(BaseModel):
    bindings: List[BindingRequest] = Field(..., min_length=1)
    deadline_seconds: Optional[float] = Field(default=None, gt=0)
