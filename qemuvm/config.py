"""qemuvm configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    # Hypervisor API
    api_url: str = "https://localhost:8006/api2/json"
    api_token: str = ""  # "user@realm!tokenid=secret"
    verify_tls: bool = True

    # HTTP behaviour (seconds)
    http_timeout: float = 30.0
    max_retries: int = 3
    retry_backoff_base: float = 1.0
    retry_backoff_max: float = 10.0

    # Parallelism bound for mutating operations cluster-wide
    max_parallel: int = 4
    slot_acquire_timeout: float | None = None

    # Settle polling after mutating calls (seconds)
    settle_timeout: float = 120.0
    settle_interval: float = 1.0
    settle_backoff: float = 2.0
    settle_interval_max: float = 10.0

    # Hypervisor task (UPID) completion timeout
    task_timeout: float = 600.0

    # Wait for the VM to report running before post-boot provisioning
    boot_timeout: float = 180.0

    # Disk that grow-only resize applies to
    primary_disk: str = "virtio0"

    # Persisted resource state
    workspace_path: str = "/var/lib/qemuvm"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json | text

    class Config:
        env_prefix = "QEMUVM_"


settings = Settings()
