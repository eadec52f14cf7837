from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime

DEPLOYMENT_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$"


def _check_content(value: str) -> str:
    # JSON may carry lone surrogates; they cannot be written to the index blob
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError("content must be valid UTF-8 text")
    return value


class DeploymentCreate(BaseModel):
    id: str = Field(..., pattern=DEPLOYMENT_ID_PATTERN)
    content: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return _check_content(v)


class DeploymentUpdate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return _check_content(v)


class DeploymentResponse(BaseModel):
    id: str
    url: Optional[str] = None


class DeploymentListResponse(BaseModel):
    ids: List[str]


class LastErrorResponse(BaseModel):
    kind: str
    message: str
    occurred_at: datetime


class DeploymentLogsResponse(BaseModel):
    id: str
    state: str
    logs: List[str]
    last_error: Optional[LastErrorResponse] = None
    in_progress: bool = False
