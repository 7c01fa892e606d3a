# kubeforge/models/settings.py

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kubeforge.utils.async_retry import RetryPolicy
from kubeforge.utils.async_command_runner import CommandTimeoutError
from kubeforge.utils.ssh import SSHConnectError

# Failures worth another attempt: the host was unreachable or a command timed out.
TRANSIENT_ERRORS = (SSHConnectError, CommandTimeoutError)


class RunSettings(BaseSettings):
    """
    Pydantic settings for one provisioning run.
    By default, these fields map to environment variables prefixed with `KUBEFORGE_`.
    For example, `KUBEFORGE_MAX_CONCURRENCY`, `KUBEFORGE_RUN_TIMEOUT`, etc.
    """

    max_concurrency: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=2.0, ge=0.0)
    retry_backoff: float = Field(default=2.0, ge=1.0)
    retry_max_delay: float = Field(default=30.0, ge=0.0)
    ssh_connect_timeout: int = Field(default=10, ge=1)
    command_timeout: float = Field(default=900.0, gt=0.0)
    run_timeout: Optional[float] = None  # None => no deadline
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="KUBEFORGE_")

    def retry_policy(self) -> RetryPolicy:
        """Retry policy for per-host operations: only transient SSH failures are retried."""
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            delay=self.retry_delay,
            backoff=self.retry_backoff,
            max_delay=self.retry_max_delay,
            retry_on=TRANSIENT_ERRORS,
            noisy=True,
        )
