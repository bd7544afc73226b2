from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KVM_FLEET_", env_file=".env", extra="ignore"
    )

    database_url: str = Field(default="sqlite:///./kvm_fleet.db")

    libvirt_uri: str = Field(default="qemu:///system")
    template_vm: str = Field(default="ubuntu20.04-30G")
    image_dir: str = Field(default="/var/lib/libvirt/images")
    transient_dir: str = Field(default="/tmp")
    guest_interface: str = Field(default="enp1s0")
    dns_servers: list[str] = Field(default_factory=list)

    ssh_user: str = Field(default="root")
    ssh_key_path: str | None = Field(default=None)
    ssh_port: int = Field(default=22, ge=1)
    ssh_connect_timeout_sec: int = Field(default=10, ge=1)
    ssh_command_timeout_sec: int = Field(default=60, ge=1)
    ssh_initial_delay_sec: int = Field(default=5, ge=0)
    ssh_timeout_sec: int = Field(default=300, ge=1)
    reboot_timeout_sec: int = Field(default=300, ge=1)
    poll_interval_sec: int = Field(default=5, ge=1)

    retry_attempts: int = Field(default=3, ge=1)
    retry_sleep_sec: float = Field(default=2.0, ge=0)
    retry_backoff: float = Field(default=2.0, ge=1.0)

    max_workers: int = Field(default=1, ge=1)
    failure_policy: str = Field(default="continue-on-error")
    dry_run: bool = Field(default=False)

    log_level: str = Field(default="INFO")
    bind_host: str = Field(default="127.0.0.1")
    bind_port: int = Field(default=8000, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
