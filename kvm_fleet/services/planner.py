import re
from ipaddress import AddressValueError, IPv4Address

from kvm_fleet.config import get_settings
from kvm_fleet.errors import (
    AddressOverflow,
    InvalidAddress,
    InvalidRange,
    InvalidRequest,
)
from kvm_fleet.schemas import FleetRequest, VmSpec, format_vm_name


_RANGE_RE = re.compile(r"^\s*(\d+)\s*-\s*(\d+)\s*$")
_DOTTED_QUAD_RE = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")


def parse_serial_range(value: str) -> tuple[int, int]:
    """Parse ``NN-MM`` into inclusive integer bounds."""
    match = _RANGE_RE.match(value or "")
    if not match:
        raise InvalidRange(f"invalid serial range {value!r}; expected NN-MM")
    start, end = int(match.group(1)), int(match.group(2))
    validate_range(start, end)
    return start, end


def validate_range(start: int, end: int) -> None:
    if start < 0 or end < 0:
        raise InvalidRange(f"serial bounds must be non-negative: {start}-{end}")
    if start > end:
        raise InvalidRange(f"serial range start {start} is greater than end {end}")


def serial_names(basename: str, start: int, end: int) -> list[str]:
    if not basename:
        raise InvalidRequest("basename must not be empty")
    validate_range(start, end)
    return [format_vm_name(basename, serial) for serial in range(start, end + 1)]


def parse_ipv4(value: str, field: str) -> IPv4Address:
    text = (value or "").strip()
    if not _DOTTED_QUAD_RE.match(text):
        raise InvalidAddress(f"{field} {value!r} is not a dotted-quad IPv4 address")
    try:
        return IPv4Address(text)
    except AddressValueError as exc:
        raise InvalidAddress(f"{field} {value!r} is not a valid IPv4 address") from exc


def offset_address(base_ip: IPv4Address, offset: int) -> IPv4Address:
    """Add ``offset`` to the last octet of ``base_ip``.

    Crossing .255 raises ``AddressOverflow`` instead of carrying into the
    third octet or wrapping back to .0.
    """
    last_octet = int(base_ip) & 0xFF
    if offset < 0 or last_octet + offset > 0xFF:
        raise AddressOverflow(str(base_ip), offset)
    return IPv4Address(int(base_ip) + offset)


def plan_fleet(request: FleetRequest) -> list[VmSpec]:
    if not request.basename or not request.basename.strip():
        raise InvalidRequest("basename must not be empty")
    validate_range(request.start, request.end)
    if not 1 <= request.mask <= 32:
        raise InvalidAddress(f"mask {request.mask} outside [1, 32]")
    if request.vcpu <= 0:
        raise InvalidRequest(f"vcpu must be positive, got {request.vcpu}")
    if request.memory_mb <= 0:
        raise InvalidRequest(f"memory must be positive, got {request.memory_mb}")

    base_ip = parse_ipv4(request.base_ip, "base_ip")
    # an on-link gateway may sit outside base_ip/mask, e.g. with /32 guests
    gateway = parse_ipv4(request.gateway, "gateway")

    template_vm = request.template_vm or get_settings().template_vm
    specs: list[VmSpec] = []
    for offset, serial in enumerate(range(request.start, request.end + 1)):
        ip_address = offset_address(base_ip, offset)
        if ip_address == gateway:
            raise InvalidAddress(
                f"planned address {ip_address} for serial {serial} collides with the gateway"
            )
        specs.append(
            VmSpec(
                name=format_vm_name(request.basename, serial),
                basename=request.basename,
                serial=serial,
                ip_address=ip_address,
                mask=request.mask,
                gateway=gateway,
                bridge=request.bridge,
                vcpu=request.vcpu,
                memory_mb=request.memory_mb,
                template_vm=template_vm,
            )
        )
    return specs
