"""Pytest configuration for infra_over_http tests."""

import threading
from typing import Dict, Optional

import pytest

from infra_over_http.modules.deployments.engine import EngineError
from infra_over_http.modules.deployments.memory_engine import MemoryEngine
from infra_over_http.modules.deployments.service import DeploymentService

NAMESPACE = "test_ns"
REGION = "westus2"


class ScriptedEngine(MemoryEngine):
    """MemoryEngine that can hold apply/destroy open, inject failures and count overlap."""

    def __init__(self):
        super().__init__()
        self.failures: Dict[str, str] = {}
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self.calls = []
        self.max_overlap: Dict[str, int] = {}
        self._running: Dict[str, int] = {}
        self._count_lock = threading.Lock()

    def hold(self) -> threading.Event:
        """Block the next apply/destroy until the returned event is set."""
        self.entered.clear()
        self.gate = threading.Event()
        return self.gate

    def fail(self, operation: str, message: str) -> None:
        self.failures[operation] = message

    def _enter(self, operation: str, deployment_id: str) -> None:
        self.calls.append((operation, deployment_id))
        with self._count_lock:
            running = self._running.get(deployment_id, 0) + 1
            self._running[deployment_id] = running
            self.max_overlap[deployment_id] = max(self.max_overlap.get(deployment_id, 0), running)
        self.entered.set()
        gate = self.gate
        if gate is not None:
            gate.wait(timeout=5)

    def _leave(self, deployment_id: str) -> None:
        with self._count_lock:
            self._running[deployment_id] -= 1

    def create_named_deployment(self, deployment_id, namespace, program):
        self.calls.append(("create", deployment_id))
        return super().create_named_deployment(deployment_id, namespace, program)

    def apply(self, handle, on_output=None):
        self._enter("apply", handle.deployment_id)
        try:
            if "apply" in self.failures:
                raise EngineError(self.failures.pop("apply"))
            return super().apply(handle, on_output=on_output)
        finally:
            self._leave(handle.deployment_id)

    def destroy(self, handle, on_output=None):
        self._enter("destroy", handle.deployment_id)
        try:
            if "destroy" in self.failures:
                raise EngineError(self.failures.pop("destroy"))
            return super().destroy(handle, on_output=on_output)
        finally:
            self._leave(handle.deployment_id)

    def remove_deployment(self, handle):
        self.calls.append(("remove", handle.deployment_id))
        if "remove" in self.failures:
            raise EngineError(self.failures.pop("remove"))
        return super().remove_deployment(handle)

    def list_deployments(self, namespace):
        if "list" in self.failures:
            raise EngineError(self.failures.pop("list"))
        return super().list_deployments(namespace)

    def mutating_calls(self, deployment_id: str):
        return [op for op, dep in self.calls if dep == deployment_id]


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def service(engine):
    return DeploymentService(engine, namespace=NAMESPACE, region=REGION, log_buffer_size=50)
