"""
Core dependencies shared by the route modules
"""

from fastapi import Request
from infra_over_http.config import settings
from infra_over_http.modules.deployments.engine import ProvisioningEngine
from infra_over_http.modules.deployments.service import DeploymentService
import logging

logger = logging.getLogger(__name__)


def create_engine(kind: str = None) -> ProvisioningEngine:
    """Build the provisioning engine named by settings.engine"""
    kind = (kind or settings.engine).lower()
    if kind == "memory":
        from infra_over_http.modules.deployments.memory_engine import MemoryEngine
        return MemoryEngine()
    if kind == "terraform":
        from infra_over_http.modules.deployments.terraform_engine import TerraformEngine
        return TerraformEngine()
    raise ValueError(f"Unknown provisioning engine '{kind}'")


async def get_deployment_service(request: Request) -> DeploymentService:
    """Process-wide orchestrator; one instance so every request shares the same leases."""
    service = getattr(request.app.state, "deployment_service", None)
    if service is None:
        service = DeploymentService(create_engine())
        request.app.state.deployment_service = service
        logger.info(f"Using {service.engine.name} provisioning engine")
    return service
