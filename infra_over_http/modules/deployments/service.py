import asyncio
import threading
import logging
from collections import deque
from typing import Callable, Dict, Optional

from starlette.concurrency import run_in_threadpool

from infra_over_http.config import settings
from infra_over_http.modules.deployments.engine import (
    DeploymentAlreadyExists,
    DeploymentHandle,
    DeploymentNotFound,
    ProvisioningEngine,
)
from infra_over_http.modules.deployments.lease_registry import Lease, LeaseRegistry
from infra_over_http.modules.deployments.models import (
    DeploymentRecord,
    DeploymentSnapshot,
    DeploymentState,
    LastError,
    Outcome,
    OutcomeKind,
)
from infra_over_http.modules.deployments.registry import DeploymentRegistry
from infra_over_http.modules.templates.binder import (
    REGION_PARAMETER,
    ProgramConfig,
    ProvisioningProgram,
    bind,
)

logger = logging.getLogger(__name__)

ParameterResolver = Callable[[str], Dict[str, str]]

# Operations may only start from these states
ENTRY_STATES = {
    DeploymentState.CREATING: {DeploymentState.ABSENT},
    DeploymentState.UPDATING: {DeploymentState.ACTIVE},
    DeploymentState.DESTROYING: {DeploymentState.ACTIVE},
}


class DeploymentService:
    """
    Lifecycle orchestrator for deployments.

    Mutating operations (create, update, destroy) hold the deployment's lease
    for their whole run and execute the blocking engine calls in the thread
    pool. Reads (get, list) are never guarded and may observe a deployment
    mid-transition.

    Every public method returns an Outcome; engine exceptions never escape.
    """

    def __init__(
        self,
        engine: ProvisioningEngine,
        namespace: Optional[str] = None,
        region: Optional[str] = None,
        leases: Optional[LeaseRegistry] = None,
        parameter_resolver: Optional[ParameterResolver] = None,
        log_buffer_size: Optional[int] = None,
        failed_record_limit: Optional[int] = None,
    ):
        self.engine = engine
        self.namespace = namespace or settings.project_namespace
        self.region = region or settings.deployment_region
        self.registry = DeploymentRegistry(engine, self.namespace)
        self.leases = leases or LeaseRegistry()
        self.parameter_resolver = parameter_resolver or self._fixed_parameters
        self.log_buffer_size = log_buffer_size or settings.log_buffer_size
        self.failed_record_limit = failed_record_limit or settings.failed_record_limit
        self._records: Dict[str, DeploymentRecord] = {}
        self._records_lock = threading.Lock()
        self._inflight = set()

    # ---- records ---------------------------------------------------------

    def _fixed_parameters(self, deployment_id: str) -> Dict[str, str]:
        return {REGION_PARAMETER: self.region}

    def _new_record(self, deployment_id: str, state: DeploymentState) -> DeploymentRecord:
        return DeploymentRecord(
            identity=deployment_id,
            state=state,
            logs=deque(maxlen=self.log_buffer_size),
        )

    def _record(self, deployment_id: str) -> Optional[DeploymentRecord]:
        with self._records_lock:
            return self._records.get(deployment_id)

    def _track(self, deployment_id: str, state: DeploymentState) -> DeploymentRecord:
        """Return the record for deployment_id, creating it in the given state if untracked."""
        with self._records_lock:
            record = self._records.get(deployment_id)
            if record is None:
                record = self._new_record(deployment_id, state)
                self._records[deployment_id] = record
            return record

    def _forget(self, deployment_id: str) -> None:
        with self._records_lock:
            self._records.pop(deployment_id, None)

    def _keep_failed(self, record: DeploymentRecord) -> None:
        """
        Keep a failed create's ABSENT record so its last error stays visible.
        The oldest such records beyond failed_record_limit are dropped.
        """
        with self._records_lock:
            if record.state is not DeploymentState.ABSENT:
                return
            self._records.pop(record.identity, None)
            self._records[record.identity] = record
            failed = [
                identity for identity, tracked in self._records.items()
                if tracked.state is DeploymentState.ABSENT and not self.leases.is_held(identity)
            ]
            for identity in failed[:max(len(failed) - self.failed_record_limit, 0)]:
                del self._records[identity]

    def _transition(self, record: DeploymentRecord, target: DeploymentState) -> None:
        with self._records_lock:
            if record.state not in ENTRY_STATES[target]:
                raise RuntimeError(
                    f"Invalid transition for {record.identity}: {record.state.value} -> {target.value}"
                )
            record.state = target

    def _snapshot(self, record: DeploymentRecord) -> DeploymentSnapshot:
        with self._records_lock:
            return DeploymentSnapshot.of(record)

    def _record_failure(self, record: DeploymentRecord, restore: DeploymentState, error: Exception) -> Outcome:
        message = str(error) or type(error).__name__
        with self._records_lock:
            record.state = restore
            record.last_error = LastError(kind=OutcomeKind.ENGINE_FAILURE, message=message)
        return Outcome.engine_failure(record.identity, message)

    def _program(self, deployment_id: str, content: str, parameters: Dict[str, str]) -> ProvisioningProgram:
        return bind(ProgramConfig(
            identity=deployment_id,
            content=content,
            region=parameters.get(REGION_PARAMETER, self.region),
            namespace=self.namespace,
        ))

    def _apply(self, handle: DeploymentHandle, record: DeploymentRecord, parameters: Dict[str, str]) -> Dict:
        for key, value in parameters.items():
            self.engine.set_parameter(handle, key, value)
        return self.engine.apply(handle, on_output=record.logs.append)

    # ---- dispatch ----------------------------------------------------------

    async def _dispatch(self, lease: Lease, operation: Callable[..., Outcome], *args) -> Outcome:
        """
        Run operation in the thread pool while holding lease.

        The work runs in its own task and the caller awaits it through
        asyncio.shield: a cancelled request stops waiting but the engine call
        runs to completion before the lease is released.
        """
        async def guarded() -> Outcome:
            with lease:
                return await run_in_threadpool(operation, *args)

        task = asyncio.ensure_future(guarded())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def wait_idle(self) -> None:
        """Wait for in-flight mutating operations to finish."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ---- mutating operations ---------------------------------------------

    async def create(self, deployment_id: str, content: str) -> Outcome:
        lease = self.leases.try_acquire(deployment_id, "create")
        if lease is None:
            return Outcome.conflict(deployment_id)
        return await self._dispatch(lease, self._create, deployment_id, content)

    async def update(self, deployment_id: str, content: str) -> Outcome:
        lease = self.leases.try_acquire(deployment_id, "update")
        if lease is None:
            return Outcome.conflict(deployment_id)
        return await self._dispatch(lease, self._update, deployment_id, content)

    async def destroy(self, deployment_id: str) -> Outcome:
        lease = self.leases.try_acquire(deployment_id, "destroy")
        if lease is None:
            return Outcome.conflict(deployment_id)
        return await self._dispatch(lease, self._destroy, deployment_id)

    def _create(self, deployment_id: str, content: str) -> Outcome:
        try:
            if self.registry.exists(deployment_id):
                return Outcome.already_exists(deployment_id)
        except Exception as e:
            logger.error(f"Error checking deployment {deployment_id}: {str(e)}")
            return Outcome.engine_failure(deployment_id, str(e))

        record = self._track(deployment_id, DeploymentState.ABSENT)
        with self._records_lock:
            if record.state is not DeploymentState.ABSENT:
                # Tracked here but gone from the engine: start over
                record.state = DeploymentState.ABSENT
                record.outputs = {}
                record.content = None
        self._transition(record, DeploymentState.CREATING)
        record.logs.clear()

        handle = None
        try:
            parameters = self.parameter_resolver(deployment_id)
            program = self._program(deployment_id, content, parameters)
            handle = self.registry.register(deployment_id, program)
            outputs = self._apply(handle, record, parameters)
        except DeploymentAlreadyExists:
            # Registered elsewhere since the existence check; nothing here to remember
            self._forget(deployment_id)
            return Outcome.already_exists(deployment_id)
        except Exception as e:
            logger.error(f"Create of deployment {deployment_id} failed: {str(e)}")
            outcome = self._record_failure(record, DeploymentState.ABSENT, e)
            if handle is not None:
                self._rollback_create(record, handle)
            self._keep_failed(record)
            return outcome

        with self._records_lock:
            record.state = DeploymentState.ACTIVE
            record.content = content
            record.outputs = dict(outputs)
            record.last_error = None
        logger.info(f"Deployment {deployment_id} created")
        return Outcome.success(deployment_id, self._snapshot(record))

    def _rollback_create(self, record: DeploymentRecord, handle: DeploymentHandle) -> None:
        """Tear down a half-created deployment so the identity is absent again."""
        deployment_id = record.identity
        try:
            self.engine.destroy(handle, on_output=record.logs.append)
            self.registry.unregister(handle)
            logger.info(f"Rolled back failed create of deployment {deployment_id}")
        except Exception as e:
            # The engine still knows the identity; keep it deletable
            logger.error(f"Rollback of deployment {deployment_id} failed: {str(e)}")
            with self._records_lock:
                record.state = DeploymentState.ACTIVE
                record.outputs = {}

    def _update(self, deployment_id: str, content: str) -> Outcome:
        try:
            if not self.registry.exists(deployment_id):
                self._forget(deployment_id)
                return Outcome.not_found(deployment_id)
        except Exception as e:
            logger.error(f"Error checking deployment {deployment_id}: {str(e)}")
            return Outcome.engine_failure(deployment_id, str(e))

        record = self._track(deployment_id, DeploymentState.ACTIVE)
        with self._records_lock:
            if record.state is DeploymentState.ABSENT:
                # Known to the engine but not created through this process
                record.state = DeploymentState.ACTIVE
        self._transition(record, DeploymentState.UPDATING)
        record.logs.clear()

        try:
            parameters = self.parameter_resolver(deployment_id)
            program = self._program(deployment_id, content, parameters)
            handle = self.registry.open(deployment_id, program)
            outputs = self._apply(handle, record, parameters)
        except DeploymentNotFound:
            with self._records_lock:
                record.state = DeploymentState.ABSENT
            self._forget(deployment_id)
            return Outcome.not_found(deployment_id)
        except Exception as e:
            logger.error(f"Update of deployment {deployment_id} failed: {str(e)}")
            return self._record_failure(record, DeploymentState.ACTIVE, e)

        with self._records_lock:
            record.state = DeploymentState.ACTIVE
            record.content = content
            record.outputs = dict(outputs)
            record.last_error = None
        logger.info(f"Deployment {deployment_id} updated")
        return Outcome.success(deployment_id, self._snapshot(record))

    def _destroy(self, deployment_id: str) -> Outcome:
        try:
            if not self.registry.exists(deployment_id):
                self._forget(deployment_id)
                return Outcome.not_found(deployment_id)
        except Exception as e:
            logger.error(f"Error checking deployment {deployment_id}: {str(e)}")
            return Outcome.engine_failure(deployment_id, str(e))

        record = self._track(deployment_id, DeploymentState.ACTIVE)
        with self._records_lock:
            if record.state is DeploymentState.ABSENT:
                record.state = DeploymentState.ACTIVE
        self._transition(record, DeploymentState.DESTROYING)
        record.logs.clear()

        try:
            parameters = self.parameter_resolver(deployment_id)
            # Destroy evaluates the configuration; the content itself is irrelevant
            program = self._program(deployment_id, record.content or "", parameters)
            handle = self.registry.open(deployment_id, program)
            for key, value in parameters.items():
                self.engine.set_parameter(handle, key, value)
            self.engine.destroy(handle, on_output=record.logs.append)
            with self._records_lock:
                record.outputs = {}
            self.registry.unregister(handle)
        except DeploymentNotFound:
            self._forget(deployment_id)
            return Outcome.not_found(deployment_id)
        except Exception as e:
            logger.error(f"Destroy of deployment {deployment_id} failed: {str(e)}")
            return self._record_failure(record, DeploymentState.ACTIVE, e)

        self._forget(deployment_id)
        logger.info(f"Deployment {deployment_id} destroyed")
        return Outcome.success(deployment_id)

    # ---- reads -------------------------------------------------------------

    async def get(self, deployment_id: str) -> Outcome:
        return await run_in_threadpool(self._get, deployment_id)

    def _get(self, deployment_id: str) -> Outcome:
        try:
            handle = self.registry.open(deployment_id)
            outputs = self.engine.get_outputs(handle)
        except DeploymentNotFound:
            return Outcome.not_found(deployment_id)
        except Exception as e:
            logger.error(f"Error getting deployment {deployment_id}: {str(e)}")
            return Outcome.engine_failure(deployment_id, str(e))

        record = self._record(deployment_id)
        with self._records_lock:
            if record is None or record.state is DeploymentState.ABSENT:
                snapshot = DeploymentSnapshot(
                    identity=deployment_id,
                    state=DeploymentState.ACTIVE,
                    content=None,
                    outputs=dict(outputs),
                    last_error=record.last_error if record else None,
                    logs=(),
                )
            else:
                snapshot = DeploymentSnapshot(
                    identity=deployment_id,
                    state=record.state,
                    content=record.content,
                    outputs=dict(outputs),
                    last_error=record.last_error,
                    logs=tuple(record.logs),
                )

        # A deployment only exists for readers once its create has finished
        if snapshot.state is DeploymentState.CREATING:
            return Outcome.not_found(deployment_id)
        if not snapshot.url:
            return Outcome.engine_failure(deployment_id, f'deployment "{deployment_id}" has no website URL')
        return Outcome.success(deployment_id, snapshot)

    async def list(self) -> Outcome:
        try:
            ids = await run_in_threadpool(self.registry.list)
        except Exception as e:
            logger.error(f"Error listing deployments: {str(e)}")
            return Outcome.engine_failure(None, str(e))
        return Outcome.listing(ids)

    async def status(self, deployment_id: str) -> Outcome:
        """Lifecycle state, last error and recent engine output of a deployment."""
        record = self._record(deployment_id)
        if record is not None:
            return Outcome.success(deployment_id, self._snapshot(record))
        try:
            exists = await run_in_threadpool(self.registry.exists, deployment_id)
        except Exception as e:
            logger.error(f"Error checking deployment {deployment_id}: {str(e)}")
            return Outcome.engine_failure(deployment_id, str(e))
        if not exists:
            return Outcome.not_found(deployment_id)
        return Outcome.success(deployment_id, self._snapshot(self._new_record(deployment_id, DeploymentState.ACTIVE)))

    def in_progress(self, deployment_id: str) -> bool:
        return self.leases.is_held(deployment_id)
