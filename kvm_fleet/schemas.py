from datetime import datetime
from enum import Enum
from ipaddress import IPv4Address

from pydantic import BaseModel, ConfigDict, Field


SERIAL_WIDTH = 2


def format_vm_name(basename: str, serial: int) -> str:
    return f"{basename}{serial:0{SERIAL_WIDTH}d}"


class FailurePolicy(str, Enum):
    CONTINUE_ON_ERROR = "continue-on-error"
    ABORT_FLEET = "abort-fleet"


class FleetRequest(BaseModel):
    basename: str
    start: int
    end: int
    base_ip: str
    mask: int
    gateway: str
    bridge: str = "br0"
    vcpu: int = 2
    memory_mb: int = 2048
    template_vm: str | None = None

    @classmethod
    def from_count(cls, *, vm_count: int, start_serial: int = 1, **fields) -> "FleetRequest":
        return cls(start=start_serial, end=start_serial + vm_count - 1, **fields)


class VmSpec(BaseModel):
    name: str
    basename: str
    serial: int
    ip_address: IPv4Address
    mask: int = Field(ge=1, le=32)
    gateway: IPv4Address
    bridge: str
    vcpu: int = Field(ge=1)
    memory_mb: int = Field(ge=1)
    template_vm: str

    @property
    def cidr(self) -> str:
        return f"{self.ip_address}/{self.mask}"


class OutcomeStatus(str, Enum):
    PROVISIONED = "provisioned"
    ALREADY_PROVISIONED = "already_provisioned"
    FAILED = "failed"
    ABORTED = "aborted"
    DESTROYED = "destroyed"
    NOT_FOUND = "not_found"


class VmOutcome(BaseModel):
    vm_name: str
    status: OutcomeStatus
    state: str | None = None
    failed_step: str | None = None
    detail: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


class VmRecordRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vm_name: str
    basename: str
    serial: int
    ip_address: str
    mask: int
    gateway: str
    bridge: str
    vcpu: int
    memory_mb: int
    template_vm: str
    state: str
    last_completed_state: str
    failed_step: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
