from kvm_fleet.errors import CommandFailure


class FakeHypervisor:
    """Records calls and keeps per-domain NICs the way virsh reports them."""

    def __init__(self, existing=(), fail_on=None, fail_undefine=(), fail_once=()):
        self.domains = set(existing)
        self.nics = {name: [("network", "default", "52:54:00:00:00:01")] for name in existing}
        self.calls = []
        self.fail_on = fail_on
        self.fail_undefine = set(fail_undefine)
        self.fail_once = set(fail_once)

    def _record(self, call, *args):
        self.calls.append((call, *args))
        if self.fail_on == call or call in self.fail_once:
            self.fail_once.discard(call)
            raise CommandFailure(
                argv=[call, *map(str, args)], attempts=3, returncode=1, detail=f"{call} broke"
            )

    def domain_exists(self, vm_name):
        self.calls.append(("domain_exists", vm_name))
        return vm_name in self.domains

    def clone(self, template_vm, vm_name):
        self._record("clone", template_vm, vm_name)
        if vm_name in self.domains:
            raise CommandFailure(
                argv=["virt-clone", "--name", vm_name],
                attempts=1,
                returncode=1,
                detail=f"ERROR    Domain with name '{vm_name}' already exists.",
            )
        self.domains.add(vm_name)
        self.nics[vm_name] = [("network", "default", "52:54:00:00:00:01")]

    def interfaces(self, vm_name):
        self.calls.append(("interfaces", vm_name))
        return list(self.nics.get(vm_name, []))

    def set_vcpus(self, vm_name, count, maximum=False):
        self._record("set_vcpus", vm_name, count, maximum)

    def set_memory(self, vm_name, memory_mb, maximum=False):
        self._record("set_memory", vm_name, memory_mb, maximum)

    def detach_interface(self, vm_name, iface_type="network", mac=None):
        self._record("detach_interface", vm_name, iface_type, mac)
        nics = self.nics.get(vm_name, [])
        remaining = [n for n in nics if not (n[0] == iface_type and mac in (None, n[2]))]
        if len(remaining) == len(nics):
            raise CommandFailure(
                argv=["virsh", "detach-interface", vm_name, iface_type],
                attempts=3,
                returncode=1,
                detail=f"error: No interface found whose type is {iface_type}",
            )
        self.nics[vm_name] = remaining

    def attach_bridge(self, vm_name, bridge, model="virtio"):
        self._record("attach_bridge", vm_name, bridge, model)
        self.nics.setdefault(vm_name, []).append(("bridge", bridge, "52:54:00:00:00:02"))

    def customize(self, vm_name, *, run_commands=None, uploads=None):
        uploaded = []
        for source, dest in uploads or []:
            with open(source, encoding="utf-8") as fh:
                uploaded.append((dest, fh.read()))
        self._record("customize", vm_name, tuple(run_commands or ()), tuple(uploaded))

    def start(self, vm_name):
        self._record("start", vm_name)

    def destroy(self, vm_name):
        self.calls.append(("destroy", vm_name))
        return True

    def undefine(self, vm_name, remove_storage=True):
        self.calls.append(("undefine", vm_name, remove_storage))
        if vm_name in self.fail_undefine:
            raise CommandFailure(
                argv=["virsh", "undefine", vm_name], attempts=3, returncode=1, detail="busy"
            )
        self.domains.discard(vm_name)

    def mutations(self):
        return [c for c in self.calls if c[0] not in ("domain_exists", "interfaces")]


class FakeGuest:
    def __init__(self, unreachable=(), fail_reboot=False):
        self.unreachable = set(unreachable)
        self.fail_reboot = fail_reboot
        self.calls = []

    def wait_for_ssh(self, host, timeout_sec, initial_delay_sec=0):
        self.calls.append(("wait_for_ssh", host, timeout_sec))
        if host in self.unreachable:
            raise TimeoutError(f"ssh on {host}:22 not reachable within {timeout_sec}s")

    def run(self, host, command):
        self.calls.append(("run", host, command))
        return ""

    def reboot_and_wait(self, host, timeout_sec):
        self.calls.append(("reboot_and_wait", host, timeout_sec))
        if self.fail_reboot:
            raise TimeoutError(f"{host} did not come back within {timeout_sec}s of reboot")
