"""In-memory provisioning engine for local development.

Used when ENGINE=memory. It satisfies the ProvisioningEngine protocol but
keeps every deployment in a dict (no persistence across restarts) and
reports the outputs the static website program would produce.
"""

import threading
from typing import Any, Dict, List, Optional

from infra_over_http.modules.deployments.engine import (
    DeploymentAlreadyExists,
    DeploymentHandle,
    DeploymentNotFound,
    EngineError,
    OutputCallback,
)
from infra_over_http.modules.templates.binder import ProvisioningProgram


class MemoryEngine:
    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        # namespace -> deployment_id -> {"outputs": ..., "parameters": ...}; insertion ordered
        self._stacks: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _stack(self, handle: DeploymentHandle) -> Dict[str, Any]:
        stack = self._stacks.get(handle.namespace, {}).get(handle.deployment_id)
        if stack is None:
            raise DeploymentNotFound(handle.deployment_id)
        return stack

    def create_named_deployment(
        self, deployment_id: str, namespace: str, program: ProvisioningProgram
    ) -> DeploymentHandle:
        with self._lock:
            stacks = self._stacks.setdefault(namespace, {})
            if deployment_id in stacks:
                raise DeploymentAlreadyExists(deployment_id)
            stacks[deployment_id] = {"outputs": {}, "parameters": {}}
        return DeploymentHandle(deployment_id=deployment_id, namespace=namespace, program=program)

    def select_named_deployment(
        self, deployment_id: str, namespace: str, program: Optional[ProvisioningProgram] = None
    ) -> DeploymentHandle:
        with self._lock:
            if deployment_id not in self._stacks.get(namespace, {}):
                raise DeploymentNotFound(deployment_id)
        return DeploymentHandle(deployment_id=deployment_id, namespace=namespace, program=program)

    def list_deployments(self, namespace: str) -> List[str]:
        with self._lock:
            return list(self._stacks.get(namespace, {}))

    def set_parameter(self, handle: DeploymentHandle, key: str, value: str) -> None:
        handle.parameters[key] = value

    def apply(self, handle: DeploymentHandle, on_output: Optional[OutputCallback] = None) -> Dict[str, Any]:
        if handle.program is None:
            raise EngineError(f"Deployment {handle.deployment_id} was selected without a program")
        program = handle.program
        outputs = {
            "website_url": f"https://cdn-endpnt-{program.storage_account_name}.azureedge.net/",
            "content_sha256": program.content_sha256,
        }
        if on_output:
            resources = program.document["resource"]
            for resource_type, instances in resources.items():
                for name in instances:
                    on_output(f"{resource_type}.{name}: applied")
        with self._lock:
            stack = self._stack(handle)
            stack["parameters"] = dict(handle.parameters)
            stack["outputs"] = outputs
        return dict(outputs)

    def destroy(self, handle: DeploymentHandle, on_output: Optional[OutputCallback] = None) -> None:
        with self._lock:
            stack = self._stack(handle)
            stack["outputs"] = {}
        if on_output:
            on_output(f"{handle.deployment_id}: all resources destroyed")

    def get_outputs(self, handle: DeploymentHandle) -> Dict[str, Any]:
        with self._lock:
            return dict(self._stack(handle)["outputs"])

    def remove_deployment(self, handle: DeploymentHandle) -> None:
        with self._lock:
            self._stacks.get(handle.namespace, {}).pop(handle.deployment_id, None)
