import logging
import textwrap
from contextlib import contextmanager
from pathlib import Path

from kvm_fleet.schemas import VmSpec


logger = logging.getLogger(__name__)

GUEST_NETPLAN_PATH = "/etc/netplan/01-netcfg.yaml"


def render_netplan(spec: VmSpec, interface: str, dns_servers: list[str] | None = None) -> str:
    nameservers = ""
    if dns_servers:
        nameservers = (
            "      nameservers:\n"
            f"        addresses: [{', '.join(dns_servers)}]\n"
        )
    return (
        textwrap.dedent(
            f"""\
            network:
              version: 2
              renderer: networkd
              ethernets:
                {interface}:
                  dhcp4: false
                  addresses:
                    - {spec.cidr}
                  routes:
                    - to: default
                      via: {spec.gateway}
            """
        )
        + nameservers
    )


def transient_path(transient_dir: str, vm_name: str) -> Path:
    return Path(transient_dir) / f"netplan-{vm_name}.yaml"


@contextmanager
def transient_netplan(
    spec: VmSpec,
    *,
    transient_dir: str,
    interface: str,
    dns_servers: list[str] | None = None,
):
    """Write the netplan file for ``spec`` and remove it once the caller is done."""
    path = transient_path(transient_dir, spec.name)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_netplan(spec, interface, dns_servers), encoding="utf-8")
    path.chmod(0o600)
    logger.debug("wrote netplan vm=%s path=%s", spec.name, path)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
