class FleetError(RuntimeError):
    """Base class for every error raised by kvm_fleet."""


class FleetValidationError(FleetError, ValueError):
    """Raised before any side effect when a fleet request is unusable."""


class InvalidRange(FleetValidationError):
    pass


class InvalidRequest(FleetValidationError):
    pass


class InvalidAddress(FleetValidationError):
    pass


class AddressOverflow(FleetValidationError):
    def __init__(self, base_ip: str, offset: int):
        self.base_ip = base_ip
        self.offset = offset
        super().__init__(
            f"address overflow: {base_ip} + {offset} runs past the last octet"
        )


class InvalidTransition(FleetError):
    pass


class CommandFailure(FleetError):
    def __init__(
        self,
        *,
        argv: list[str],
        attempts: int,
        returncode: int | None,
        detail: str,
    ):
        self.argv = argv
        self.attempts = attempts
        self.returncode = returncode
        self.detail = detail
        super().__init__(
            f"command failed after {attempts} attempts: {' '.join(argv)} (rc={returncode}: {detail})"
        )


class ProvisioningError(FleetError):
    kind = "provisioning failed"

    def __init__(self, *, step: str, vm_name: str, detail: str):
        self.step = step
        self.vm_name = vm_name
        self.detail = detail
        super().__init__(f"{self.kind} vm={vm_name} step={step}: {detail}")


class HypervisorCallFailed(ProvisioningError):
    kind = "hypervisor call failed"


class StepTimeout(ProvisioningError):
    kind = "timed out"


class VmNotFound(FleetError):
    def __init__(self, vm_name: str):
        self.vm_name = vm_name
        super().__init__(f"{vm_name} does not exist.")
