import re
from fastapi import APIRouter, Depends, HTTPException, Response
from infra_over_http.core.dependencies import get_deployment_service
from infra_over_http.modules.deployments.models import Outcome, OutcomeKind
from infra_over_http.modules.deployments.schemas import (
    DEPLOYMENT_ID_PATTERN,
    DeploymentCreate,
    DeploymentListResponse,
    DeploymentLogsResponse,
    DeploymentResponse,
    DeploymentUpdate,
    LastErrorResponse,
)
from infra_over_http.modules.deployments.service import DeploymentService
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["deployments"])

OUTCOME_STATUS = {
    OutcomeKind.ALREADY_EXISTS: 409,
    OutcomeKind.NOT_FOUND: 404,
    OutcomeKind.CONFLICT: 409,
    OutcomeKind.ENGINE_FAILURE: 500,
}

_deployment_id = re.compile(DEPLOYMENT_ID_PATTERN)


def _raise_for_outcome(outcome: Outcome) -> None:
    if outcome.ok:
        return
    status_code = OUTCOME_STATUS[outcome.kind]
    if status_code >= 500:
        logger.error(f"Deployment {outcome.deployment_id} {outcome.kind.value}: {outcome.detail}")
    raise HTTPException(status_code=status_code, detail=outcome.detail)


def _check_deployment_id(deployment_id: str) -> None:
    """Identities that could never have been created do not exist"""
    if not _deployment_id.match(deployment_id):
        _raise_for_outcome(Outcome.not_found(deployment_id))


def _to_response(outcome: Outcome) -> DeploymentResponse:
    return DeploymentResponse(id=outcome.deployment_id, url=outcome.deployment.url if outcome.deployment else None)


@router.post("", response_model=DeploymentResponse, status_code=201)
async def create_deployment(
    deployment_data: DeploymentCreate,
    service: DeploymentService = Depends(get_deployment_service),
):
    """Create a new deployment and provision it from the given content"""
    outcome = await service.create(deployment_data.id, deployment_data.content)
    _raise_for_outcome(outcome)
    return _to_response(outcome)


@router.get("", response_model=DeploymentListResponse)
async def list_deployments(service: DeploymentService = Depends(get_deployment_service)):
    """List deployment ids in engine order"""
    outcome = await service.list()
    _raise_for_outcome(outcome)
    return DeploymentListResponse(ids=list(outcome.ids))


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(
    deployment_id: str,
    service: DeploymentService = Depends(get_deployment_service),
):
    _check_deployment_id(deployment_id)
    outcome = await service.get(deployment_id)
    _raise_for_outcome(outcome)
    return _to_response(outcome)


@router.put("/{deployment_id}", response_model=DeploymentResponse)
async def update_deployment(
    deployment_id: str,
    deployment_data: DeploymentUpdate,
    service: DeploymentService = Depends(get_deployment_service),
):
    """Replace the content of an existing deployment and re-apply it"""
    _check_deployment_id(deployment_id)
    outcome = await service.update(deployment_id, deployment_data.content)
    _raise_for_outcome(outcome)
    return _to_response(outcome)


@router.delete("/{deployment_id}")
async def delete_deployment(
    deployment_id: str,
    service: DeploymentService = Depends(get_deployment_service),
):
    """Tear down a deployment's resources and remove it. The id may be reused afterwards."""
    _check_deployment_id(deployment_id)
    outcome = await service.destroy(deployment_id)
    _raise_for_outcome(outcome)
    return Response(status_code=200)


@router.get("/{deployment_id}/logs", response_model=DeploymentLogsResponse)
async def get_deployment_logs(
    deployment_id: str,
    service: DeploymentService = Depends(get_deployment_service),
):
    """
    Poll a deployment's lifecycle state.
    Returns engine output of the latest mutating operation and the last error.
    """
    _check_deployment_id(deployment_id)
    outcome = await service.status(deployment_id)
    _raise_for_outcome(outcome)
    deployment = outcome.deployment
    last_error = None
    if deployment.last_error:
        last_error = LastErrorResponse(
            kind=deployment.last_error.kind.value,
            message=deployment.last_error.message,
            occurred_at=deployment.last_error.occurred_at,
        )
    return DeploymentLogsResponse(
        id=deployment_id,
        state=deployment.state.value,
        logs=list(deployment.logs),
        last_error=last_error,
        in_progress=service.in_progress(deployment_id),
    )
