import subprocess
import os
import json
import shutil
import logging
import threading
from collections import deque
from typing import Dict, Any, Optional, List
from infra_over_http.config import settings
from infra_over_http.modules.deployments.engine import (
    DeploymentAlreadyExists,
    DeploymentHandle,
    DeploymentNotFound,
    EngineError,
    OutputCallback,
    flatten_outputs,
)
from infra_over_http.modules.deployments.s3_state import S3StateStore, STATE_FILE_NAME
from infra_over_http.modules.templates.binder import ProvisioningProgram

logger = logging.getLogger(__name__)

ERROR_TAIL_LINES = 20


class TerraformEngine:
    """
    Provisioning engine backed by the terraform CLI.

    Each deployment is a Terraform workspace whose state lives in the S3
    backend under the namespace prefix. Mutating calls run in a working
    directory per deployment; callers must not run two mutating calls for
    the same deployment at once.
    """

    name = "terraform"

    def __init__(
        self,
        state_store: Optional[S3StateStore] = None,
        work_root: Optional[str] = None,
        terraform_binary: Optional[str] = None,
    ):
        self.state_store = state_store or S3StateStore()
        self.work_root = work_root or settings.work_dir
        self.terraform_binary = terraform_binary or settings.terraform_binary
        self.apply_timeout = settings.terraform_apply_timeout
        self.command_timeout = settings.terraform_command_timeout
        self._bucket_ready = False
        self._bucket_lock = threading.Lock()
        self._load_environment_credentials()

    def _load_environment_credentials(self):
        """Load Azure credentials for the provider and AWS credentials for the state backend"""
        self.env_credentials = {}
        azure = {
            "ARM_SUBSCRIPTION_ID": settings.azure_subscription_id,
            "ARM_CLIENT_ID": settings.azure_client_id,
            "ARM_CLIENT_SECRET": settings.azure_client_secret,
            "ARM_TENANT_ID": settings.azure_tenant_id,
        }
        if all(azure.values()):
            self.env_credentials.update(azure)
        else:
            logger.warning("Azure service principal not fully configured, relying on ambient provider auth")
        if settings.aws_access_key_id and settings.aws_secret_access_key:
            self.env_credentials.update({
                "AWS_ACCESS_KEY_ID": settings.aws_access_key_id,
                "AWS_SECRET_ACCESS_KEY": settings.aws_secret_access_key,
            })
        self.env_credentials["AWS_DEFAULT_REGION"] = settings.aws_region

    def _get_terraform_env(self) -> dict:
        """Isolated environment for the terraform subprocess; credentials go through env, never argv."""
        env = os.environ.copy()
        env.update(self.env_credentials)
        env["TF_IN_AUTOMATION"] = "1"
        env["TF_INPUT"] = "0"
        env.pop("TF_WORKSPACE", None)
        return env

    def _ensure_bucket(self):
        with self._bucket_lock:
            if not self._bucket_ready:
                self.state_store.ensure_bucket()
                self._bucket_ready = True

    def _deployment_dir(self, namespace: str, deployment_id: str) -> str:
        return os.path.join(self.work_root, namespace, deployment_id)

    def _run(self, args: List[str], cwd: str, timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        cmd = [self.terraform_binary] + args
        try:
            return subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                env=self._get_terraform_env(),
                timeout=timeout or self.command_timeout
            )
        except subprocess.TimeoutExpired:
            raise EngineError(f"Terraform {args[0]} timed out")
        except FileNotFoundError:
            raise EngineError(f"Terraform not found at '{self.terraform_binary}'")

    def _stream(self, args: List[str], cwd: str, on_output: Optional[OutputCallback]) -> None:
        """Run a long terraform command, forwarding each output line as it is produced."""
        cmd = [self.terraform_binary] + args
        tail = deque(maxlen=ERROR_TAIL_LINES)
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._get_terraform_env(),
                bufsize=1,
            )
        except FileNotFoundError:
            raise EngineError(f"Terraform not found at '{self.terraform_binary}'")

        def stream_output():
            for line in iter(proc.stdout.readline, ''):
                line = line.rstrip()
                if not line.strip():
                    continue
                tail.append(line)
                logger.info(line)
                if on_output:
                    on_output(line)

        stream_thread = threading.Thread(target=stream_output, daemon=True)
        stream_thread.start()
        try:
            proc.wait(timeout=self.apply_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            stream_thread.join(timeout=5)
            raise EngineError(f"Terraform {args[0]} timed out after {self.apply_timeout}s")
        stream_thread.join(timeout=5)

        if proc.returncode != 0:
            detail = "\n".join(tail)
            raise EngineError(f"Terraform {args[0]} failed with return code {proc.returncode}: {detail}")

    def _prepare_directory(self, handle: DeploymentHandle, program: ProvisioningProgram) -> None:
        """Write the program and the S3 backend configuration, then run terraform init."""
        work_dir = self._deployment_dir(handle.namespace, handle.deployment_id)
        os.makedirs(work_dir, exist_ok=True)
        handle.work_dir = work_dir

        with open(os.path.join(work_dir, "main.tf.json"), "w") as f:
            f.write(program.to_json())

        backend = {
            "terraform": {
                "backend": {
                    "s3": {
                        "bucket": self.state_store.bucket_name,
                        "key": STATE_FILE_NAME,
                        "workspace_key_prefix": handle.namespace,
                        "region": self.state_store.region,
                        "encrypt": True,
                    }
                }
            }
        }
        with open(os.path.join(work_dir, "backend.tf.json"), "w") as f:
            json.dump(backend, f, indent=2)

        result = self._run(["init", "-input=false", "-reconfigure"], cwd=work_dir)
        if result.returncode != 0:
            raise EngineError(f"Terraform init failed: {result.stderr.strip()}")
        logger.info(f"Initialized working directory {work_dir}")

    def _write_tfvars(self, handle: DeploymentHandle) -> None:
        with open(os.path.join(handle.work_dir, "terraform.tfvars.json"), "w") as f:
            json.dump(handle.parameters, f, indent=2, sort_keys=True)

    def create_named_deployment(
        self, deployment_id: str, namespace: str, program: ProvisioningProgram
    ) -> DeploymentHandle:
        self._ensure_bucket()
        if self.state_store.state_exists(namespace, deployment_id):
            raise DeploymentAlreadyExists(deployment_id)

        handle = DeploymentHandle(deployment_id=deployment_id, namespace=namespace, program=program)
        self._prepare_directory(handle, program)
        result = self._run(["workspace", "new", deployment_id], cwd=handle.work_dir)
        if result.returncode != 0:
            if "already exists" in result.stderr:
                raise DeploymentAlreadyExists(deployment_id)
            raise EngineError(f"Terraform workspace new failed: {result.stderr.strip()}")
        logger.info(f"Created workspace {deployment_id} in {namespace}")
        return handle

    def select_named_deployment(
        self, deployment_id: str, namespace: str, program: Optional[ProvisioningProgram] = None
    ) -> DeploymentHandle:
        if not self.state_store.state_exists(namespace, deployment_id):
            raise DeploymentNotFound(deployment_id)

        handle = DeploymentHandle(deployment_id=deployment_id, namespace=namespace, program=program)
        if program is None:
            # Reads go straight to the state bucket; no working directory needed
            return handle

        self._ensure_bucket()
        self._prepare_directory(handle, program)
        result = self._run(["workspace", "select", deployment_id], cwd=handle.work_dir)
        if result.returncode != 0:
            if "doesn't exist" in result.stderr or "does not exist" in result.stderr:
                raise DeploymentNotFound(deployment_id)
            raise EngineError(f"Terraform workspace select failed: {result.stderr.strip()}")
        return handle

    def list_deployments(self, namespace: str) -> List[str]:
        return self.state_store.list_deployments(namespace)

    def set_parameter(self, handle: DeploymentHandle, key: str, value: str) -> None:
        handle.parameters[key] = value

    def apply(self, handle: DeploymentHandle, on_output: Optional[OutputCallback] = None) -> Dict[str, Any]:
        if not handle.work_dir:
            raise EngineError(f"Deployment {handle.deployment_id} was selected without a program")
        self._write_tfvars(handle)
        self._stream(
            ["apply", "-auto-approve", "-input=false", "-var-file", "terraform.tfvars.json"],
            cwd=handle.work_dir,
            on_output=on_output,
        )

        output_result = self._run(["output", "-json"], cwd=handle.work_dir)
        outputs = {}
        if output_result.returncode == 0 and output_result.stdout:
            try:
                outputs = json.loads(output_result.stdout)
            except json.JSONDecodeError:
                logger.warning("Failed to parse Terraform outputs")
        logger.info(f"Terraform apply completed for {handle.deployment_id}")
        return flatten_outputs(outputs)

    def destroy(self, handle: DeploymentHandle, on_output: Optional[OutputCallback] = None) -> None:
        if not handle.work_dir:
            raise EngineError(f"Deployment {handle.deployment_id} was selected without a program")
        # Destroy evaluates the configuration, so the apply-time variables must be present
        self._write_tfvars(handle)
        self._stream(
            ["destroy", "-auto-approve", "-input=false", "-var-file", "terraform.tfvars.json"],
            cwd=handle.work_dir,
            on_output=on_output,
        )
        logger.info(f"Terraform destroy completed for {handle.deployment_id}")

    def get_outputs(self, handle: DeploymentHandle) -> Dict[str, Any]:
        return flatten_outputs(self.state_store.read_outputs(handle.namespace, handle.deployment_id))

    def remove_deployment(self, handle: DeploymentHandle) -> None:
        work_dir = handle.work_dir or self._deployment_dir(handle.namespace, handle.deployment_id)
        if not os.path.isdir(work_dir):
            raise EngineError(f"No working directory for deployment {handle.deployment_id}")

        result = self._run(["workspace", "select", "default"], cwd=work_dir)
        if result.returncode != 0:
            raise EngineError(f"Terraform workspace select failed: {result.stderr.strip()}")
        result = self._run(["workspace", "delete", handle.deployment_id], cwd=work_dir)
        if result.returncode != 0:
            raise EngineError(f"Terraform workspace delete failed: {result.stderr.strip()}")
        logger.info(f"Removed workspace {handle.deployment_id} from {handle.namespace}")

        try:
            shutil.rmtree(work_dir)
        except OSError as e:
            logger.warning(f"Failed to cleanup work directory {work_dir}: {str(e)}")
