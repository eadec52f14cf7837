# In-process deployment records.
# Durable state lives in the provisioning engine; these records only carry
# what the engine does not: lifecycle state, last applied content,
# the last error and recent engine output.

"""
Deployment record:
- identity: str (primary key, immutable)
- state: ABSENT | CREATING | ACTIVE | UPDATING | DESTROYING
- content: str (nullable) - last successfully applied content
- outputs: dict - replaced only by a successful apply
- last_error: LastError (nullable) - cleared by the next successful operation
- logs: deque[str] - engine output from the latest mutating operation
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, Optional


class DeploymentState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    ACTIVE = "active"
    UPDATING = "updating"
    DESTROYING = "destroying"


class OutcomeKind(str, Enum):
    OK = "ok"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    ENGINE_FAILURE = "engine_failure"


@dataclass(frozen=True)
class LastError:
    kind: OutcomeKind
    message: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class DeploymentRecord:
    identity: str
    state: DeploymentState = DeploymentState.ABSENT
    content: Optional[str] = None
    outputs: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[LastError] = None
    logs: Deque[str] = field(default_factory=lambda: deque(maxlen=500))

    @property
    def url(self) -> Optional[str]:
        return self.outputs.get("website_url")


@dataclass(frozen=True)
class DeploymentSnapshot:
    """Immutable copy of a record handed out to callers."""

    identity: str
    state: DeploymentState
    content: Optional[str]
    outputs: Dict[str, Any]
    last_error: Optional[LastError]
    logs: tuple

    @property
    def url(self) -> Optional[str]:
        return self.outputs.get("website_url")

    @classmethod
    def of(cls, record: DeploymentRecord) -> "DeploymentSnapshot":
        return cls(
            identity=record.identity,
            state=record.state,
            content=record.content,
            outputs=dict(record.outputs),
            last_error=record.last_error,
            logs=tuple(record.logs),
        )


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    deployment_id: Optional[str] = None
    deployment: Optional[DeploymentSnapshot] = None
    detail: Optional[str] = None
    ids: Optional[tuple] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @classmethod
    def success(cls, deployment_id: str, deployment: Optional[DeploymentSnapshot] = None) -> "Outcome":
        return cls(OutcomeKind.OK, deployment_id, deployment=deployment)

    @classmethod
    def listing(cls, ids) -> "Outcome":
        return cls(OutcomeKind.OK, ids=tuple(ids))

    @classmethod
    def already_exists(cls, deployment_id: str) -> "Outcome":
        return cls(OutcomeKind.ALREADY_EXISTS, deployment_id, detail=f'deployment "{deployment_id}" already exists')

    @classmethod
    def not_found(cls, deployment_id: str) -> "Outcome":
        return cls(OutcomeKind.NOT_FOUND, deployment_id, detail=f'deployment "{deployment_id}" does not exist')

    @classmethod
    def conflict(cls, deployment_id: str) -> "Outcome":
        return cls(
            OutcomeKind.CONFLICT,
            deployment_id,
            detail=f'deployment "{deployment_id}" already has an operation in progress',
        )

    @classmethod
    def engine_failure(cls, deployment_id: str, detail: str) -> "Outcome":
        return cls(OutcomeKind.ENGINE_FAILURE, deployment_id, detail=detail)
