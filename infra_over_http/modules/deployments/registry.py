from typing import List, Optional
import logging

from infra_over_http.modules.deployments.engine import (
    DeploymentHandle,
    DeploymentNotFound,
    ProvisioningEngine,
)
from infra_over_http.modules.templates.binder import ProvisioningProgram

logger = logging.getLogger(__name__)


class DeploymentRegistry:
    """
    Identity view over the engine's own bookkeeping.

    Nothing is cached here: every call asks the engine, so the registry
    cannot drift from engine state.
    """

    def __init__(self, engine: ProvisioningEngine, namespace: str):
        self.engine = engine
        self.namespace = namespace

    def exists(self, deployment_id: str) -> bool:
        try:
            self.engine.select_named_deployment(deployment_id, self.namespace)
            return True
        except DeploymentNotFound:
            return False

    def list(self) -> List[str]:
        return self.engine.list_deployments(self.namespace)

    def open(self, deployment_id: str, program: Optional[ProvisioningProgram] = None) -> DeploymentHandle:
        """Select an existing deployment. Raises DeploymentNotFound."""
        return self.engine.select_named_deployment(deployment_id, self.namespace, program)

    def register(self, deployment_id: str, program: ProvisioningProgram) -> DeploymentHandle:
        """Create the named deployment. Raises DeploymentAlreadyExists."""
        handle = self.engine.create_named_deployment(deployment_id, self.namespace, program)
        logger.info(f"Registered deployment {deployment_id}")
        return handle

    def unregister(self, handle: DeploymentHandle) -> None:
        self.engine.remove_deployment(handle)
        logger.info(f"Unregistered deployment {handle.deployment_id}")
