from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Provisioning engine
    engine: str = "terraform"  # terraform | memory
    project_namespace: str = "infra_over_http"
    deployment_region: str = "westus2"
    terraform_binary: str = "terraform"
    work_dir: str = "/tmp/infra-over-http"
    terraform_apply_timeout: int = 1800  # seconds, apply and destroy
    terraform_command_timeout: int = 300  # seconds, init/workspace/output
    log_buffer_size: int = 500
    failed_record_limit: int = 1000  # failed creates whose last error is kept

    # AWS S3 state backend (will read from uppercase env vars automatically)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-east-1"
    s3_bucket_name: Optional[str] = None

    # Azure Credentials
    azure_subscription_id: Optional[str] = None
    azure_client_id: Optional[str] = None
    azure_client_secret: Optional[str] = None
    azure_tenant_id: Optional[str] = None

    # App
    app_name: str = "infra-over-http"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",  # No prefix needed
        extra="ignore"
    )


settings = Settings()
