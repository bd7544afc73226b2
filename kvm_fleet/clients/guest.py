import logging
import socket
import time
from contextlib import contextmanager

import paramiko

from kvm_fleet.errors import CommandFailure


logger = logging.getLogger(__name__)

BOOT_ID_PATH = "/proc/sys/kernel/random/boot_id"


class GuestClient:
    """Authenticated shell access to freshly cloned guests.

    Host keys are regenerated inside every clone, so unknown keys are
    accepted and never persisted.
    """

    def __init__(
        self,
        *,
        user: str,
        key_path: str | None = None,
        port: int = 22,
        connect_timeout_sec: float = 10.0,
        command_timeout_sec: float = 60.0,
        poll_interval_sec: float = 5.0,
        dry_run: bool = False,
    ):
        self.user = user
        self.key_path = key_path
        self.port = port
        self.connect_timeout_sec = connect_timeout_sec
        self.command_timeout_sec = command_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.dry_run = dry_run

    def port_open(self, host: str) -> bool:
        try:
            with socket.create_connection(
                (host, self.port), timeout=self.connect_timeout_sec
            ):
                return True
        except OSError:
            return False

    def wait_for_ssh(self, host: str, timeout_sec: float, initial_delay_sec: float = 0) -> None:
        if self.dry_run:
            logger.info("dry-run wait_for_ssh host=%s", host)
            return
        if initial_delay_sec:
            time.sleep(initial_delay_sec)
        deadline = time.monotonic() + timeout_sec
        while True:
            if self.port_open(host):
                logger.info("ssh reachable host=%s port=%s", host, self.port)
                return
            if time.monotonic() >= deadline:
                raise TimeoutError(
                    f"ssh on {host}:{self.port} not reachable within {timeout_sec}s"
                )
            time.sleep(self.poll_interval_sec)

    @contextmanager
    def _connect(self, host: str):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                port=self.port,
                username=self.user,
                key_filename=self.key_path,
                timeout=self.connect_timeout_sec,
                banner_timeout=self.connect_timeout_sec,
                auth_timeout=self.connect_timeout_sec,
            )
            yield client
        finally:
            client.close()

    def run(self, host: str, command: str) -> str:
        if self.dry_run:
            logger.info("dry-run remote host=%s command=%s", host, command)
            return ""
        logger.debug("remote command host=%s command=%s", host, command)
        with self._connect(host) as client:
            _stdin, stdout, stderr = client.exec_command(
                command, timeout=self.command_timeout_sec
            )
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            status = stdout.channel.recv_exit_status()
        if status != 0:
            raise CommandFailure(
                argv=["ssh", f"{self.user}@{host}", command],
                attempts=1,
                returncode=status,
                detail=(err.strip() or out.strip())[:500],
            )
        return out

    def boot_id(self, host: str) -> str:
        return self.run(host, f"cat {BOOT_ID_PATH}").strip()

    def reboot_and_wait(self, host: str, timeout_sec: float) -> None:
        """Reboot the guest and block until it is back with a new boot id."""
        if self.dry_run:
            logger.info("dry-run reboot host=%s", host)
            return
        previous = self.boot_id(host)
        # detach so the session can close before the guest goes down
        self.run(host, "nohup sh -c 'sleep 1; systemctl reboot' >/dev/null 2>&1 &")
        deadline = time.monotonic() + timeout_sec
        while time.monotonic() < deadline:
            time.sleep(self.poll_interval_sec)
            if not self.port_open(host):
                continue
            try:
                current = self.boot_id(host)
            except (paramiko.SSHException, OSError, CommandFailure) as exc:
                logger.debug("guest not ready after reboot host=%s detail=%s", host, exc)
                continue
            if current and current != previous:
                logger.info("guest rebooted host=%s", host)
                return
        raise TimeoutError(f"{host} did not come back within {timeout_sec}s of reboot")
