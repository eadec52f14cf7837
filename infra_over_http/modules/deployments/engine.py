"""Interface of the external provisioning engine."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from infra_over_http.modules.templates.binder import ProvisioningProgram

OutputCallback = Callable[[str], None]


class DeploymentAlreadyExists(Exception):
    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f'deployment "{deployment_id}" already exists')


class DeploymentNotFound(Exception):
    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(f'deployment "{deployment_id}" does not exist')


class EngineError(Exception):
    """Opaque provisioning failure reported by the engine."""


@dataclass
class DeploymentHandle:
    deployment_id: str
    namespace: str
    program: Optional[ProvisioningProgram] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    work_dir: Optional[str] = None


class ProvisioningEngine(Protocol):
    name: str

    def create_named_deployment(
        self, deployment_id: str, namespace: str, program: ProvisioningProgram
    ) -> DeploymentHandle:
        ...

    def select_named_deployment(
        self, deployment_id: str, namespace: str, program: Optional[ProvisioningProgram] = None
    ) -> DeploymentHandle:
        ...

    def list_deployments(self, namespace: str) -> List[str]:
        ...

    def apply(self, handle: DeploymentHandle, on_output: Optional[OutputCallback] = None) -> Dict[str, Any]:
        ...

    def destroy(self, handle: DeploymentHandle, on_output: Optional[OutputCallback] = None) -> None:
        ...

    def get_outputs(self, handle: DeploymentHandle) -> Dict[str, Any]:
        ...

    def remove_deployment(self, handle: DeploymentHandle) -> None:
        ...

    def set_parameter(self, handle: DeploymentHandle, key: str, value: str) -> None:
        ...


def flatten_outputs(raw_output: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract a flat name -> value dict from Terraform-style outputs
    ({"name": {"value": ..., "sensitive": ...}}). Plain values pass through.
    """
    if not raw_output or not isinstance(raw_output, dict):
        return {}
    flat = {}
    for key, entry in raw_output.items():
        if isinstance(entry, dict) and "value" in entry:
            flat[key] = entry["value"]
        else:
            flat[key] = entry
    return flat
