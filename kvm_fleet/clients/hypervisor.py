import logging
from pathlib import Path

from kvm_fleet.clients.commands import NO_RETRY, CommandRunner
from kvm_fleet.errors import CommandFailure


logger = logging.getLogger(__name__)


class HypervisorClient:
    """Thin wrapper over the libvirt command line tools.

    Each call spawns its own process against ``uri``, so one client can be
    shared by concurrent provisioning workers.
    """

    def __init__(self, runner: CommandRunner, uri: str, image_dir: str):
        self.runner = runner
        self.uri = uri
        self.image_dir = image_dir

    def _virsh(self, *args: str) -> list[str]:
        return ["virsh", "--connect", self.uri, *args]

    def disk_image_path(self, vm_name: str) -> str:
        # virt-clone --auto-clone names the copied disk after the new domain
        return str(Path(self.image_dir) / f"{vm_name}.qcow2")

    def domain_exists(self, vm_name: str) -> bool:
        return self.runner.succeeds(self._virsh("dominfo", vm_name))

    def interfaces(self, vm_name: str) -> list[tuple[str, str, str]]:
        """Return (type, source, mac) for each NIC in the persistent config."""
        completed = self.runner.run(
            self._virsh("domiflist", vm_name, "--inactive"), retry=NO_RETRY
        )
        nics: list[tuple[str, str, str]] = []
        seen_rule = False
        for line in (completed.stdout or "").splitlines():
            if line.startswith("---"):
                seen_rule = True
                continue
            fields = line.split()
            # Interface Type Source Model MAC
            if seen_rule and len(fields) >= 5:
                nics.append((fields[1], fields[2], fields[4]))
        return nics

    def clone(self, template_vm: str, vm_name: str) -> None:
        # not retried: a partial virt-clone leaves the domain defined
        self.runner.run(
            [
                "virt-clone",
                "--connect",
                self.uri,
                "--original",
                template_vm,
                "--name",
                vm_name,
                "--auto-clone",
            ],
            retry=NO_RETRY,
        )

    def set_vcpus(self, vm_name: str, count: int, maximum: bool = False) -> None:
        args = ["setvcpus", vm_name, str(count)]
        if maximum:
            args.append("--maximum")
        args.append("--config")
        self.runner.run(self._virsh(*args))

    def set_memory(self, vm_name: str, memory_mb: int, maximum: bool = False) -> None:
        command = "setmaxmem" if maximum else "setmem"
        self.runner.run(
            self._virsh(command, vm_name, str(memory_mb * 1024), "--config")
        )

    def detach_interface(
        self, vm_name: str, iface_type: str = "network", mac: str | None = None
    ) -> None:
        args = ["detach-interface", vm_name, iface_type]
        if mac:
            args.extend(["--mac", mac])
        args.append("--config")
        self.runner.run(self._virsh(*args))

    def attach_bridge(self, vm_name: str, bridge: str, model: str = "virtio") -> None:
        self.runner.run(
            self._virsh(
                "attach-interface",
                vm_name,
                "bridge",
                bridge,
                "--model",
                model,
                "--config",
            ),
            retry=NO_RETRY,
        )

    def customize(
        self,
        vm_name: str,
        *,
        run_commands: list[str] | None = None,
        uploads: list[tuple[str, str]] | None = None,
    ) -> None:
        argv = ["virt-customize", "-a", self.disk_image_path(vm_name)]
        for command in run_commands or []:
            argv.extend(["--run-command", command])
        for source, dest in uploads or []:
            argv.extend(["--upload", f"{source}:{dest}"])
        self.runner.run(argv)

    def start(self, vm_name: str) -> None:
        self.runner.run(self._virsh("start", vm_name))

    def destroy(self, vm_name: str) -> bool:
        """Force off a domain. Returns False when it was not running."""
        try:
            self.runner.run(self._virsh("destroy", vm_name), retry=NO_RETRY)
        except CommandFailure as exc:
            logger.info("destroy skipped vm=%s detail=%s", vm_name, exc.detail)
            return False
        return True

    def undefine(self, vm_name: str, remove_storage: bool = True) -> None:
        args = ["undefine", vm_name]
        if remove_storage:
            args.append("--remove-all-storage")
        self.runner.run(self._virsh(*args))
