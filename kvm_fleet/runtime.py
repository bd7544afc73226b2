from kvm_fleet.clients.commands import CommandRunner, RetryPolicy
from kvm_fleet.clients.guest import GuestClient
from kvm_fleet.clients.hypervisor import HypervisorClient
from kvm_fleet.config import Settings, get_settings


def build_hypervisor_client(settings: Settings | None = None) -> HypervisorClient:
    settings = settings or get_settings()
    retry = RetryPolicy(
        settings.retry_attempts, settings.retry_sleep_sec, settings.retry_backoff
    )
    runner = CommandRunner(retry, dry_run=settings.dry_run)
    return HypervisorClient(
        runner=runner, uri=settings.libvirt_uri, image_dir=settings.image_dir
    )


def build_guest_client(settings: Settings | None = None) -> GuestClient:
    settings = settings or get_settings()
    return GuestClient(
        user=settings.ssh_user,
        key_path=settings.ssh_key_path,
        port=settings.ssh_port,
        connect_timeout_sec=settings.ssh_connect_timeout_sec,
        command_timeout_sec=settings.ssh_command_timeout_sec,
        poll_interval_sec=settings.poll_interval_sec,
        dry_run=settings.dry_run,
    )
