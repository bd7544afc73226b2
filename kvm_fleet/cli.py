"""
Command-line interface for numbered KVM guest fleets.
"""

import logging

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from kvm_fleet.config import get_settings
from kvm_fleet.db import initialize_state, session_scope
from kvm_fleet.errors import FleetValidationError
from kvm_fleet.logging_config import configure_logging
from kvm_fleet.repositories import delete_record, list_records
from kvm_fleet.runtime import build_guest_client, build_hypervisor_client
from kvm_fleet.schemas import FailurePolicy, FleetRequest, OutcomeStatus, VmOutcome
from kvm_fleet.services.decommission import decommission_range, prune_missing
from kvm_fleet.services.planner import parse_serial_range, plan_fleet
from kvm_fleet.services.provisioning import provision_fleet


app = typer.Typer(
    name="kvm-fleet",
    help="Clone, track and destroy numbered KVM guest fleets",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)

STATUS_STYLES = {
    OutcomeStatus.PROVISIONED: "green",
    OutcomeStatus.ALREADY_PROVISIONED: "cyan",
    OutcomeStatus.DESTROYED: "green",
    OutcomeStatus.NOT_FOUND: "yellow",
    OutcomeStatus.ABORTED: "yellow",
    OutcomeStatus.FAILED: "red",
}


@app.callback()
def main_callback(
    log_level: str | None = typer.Option(None, help="Override KVM_FLEET_LOG_LEVEL"),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Log hypervisor and guest commands instead of running them"
    ),
) -> None:
    configure_logging(log_level)
    if dry_run:
        get_settings().dry_run = True
    initialize_state()


def _outcome_table(title: str, outcomes: list[VmOutcome]) -> Table:
    table = Table(title=title)
    table.add_column("VM", style="cyan")
    table.add_column("Outcome")
    table.add_column("State")
    table.add_column("Failed step")
    table.add_column("Detail", overflow="fold")
    for outcome in outcomes:
        style = STATUS_STYLES.get(outcome.status, "")
        table.add_row(
            outcome.vm_name,
            f"[{style}]{outcome.status.value}[/{style}]" if style else outcome.status.value,
            outcome.state or "",
            outcome.failed_step or "",
            escape(outcome.detail or ""),
        )
    return table


def _fleet_request(
    basename: str,
    vm_count: int,
    start_serial: int,
    network_bridge: str,
    vcpu: int,
    memory: int,
    base_ip: str,
    mask: int,
    gw: str,
    template: str | None,
) -> FleetRequest:
    return FleetRequest.from_count(
        vm_count=vm_count,
        start_serial=start_serial,
        basename=basename,
        base_ip=base_ip,
        mask=mask,
        gateway=gw,
        bridge=network_bridge,
        vcpu=vcpu,
        memory_mb=memory,
        template_vm=template,
    )


@app.command("destroy")
def destroy(
    args: list[str] | None = typer.Argument(
        None, metavar="<basename> <serial_range>", show_default=False
    ),
) -> None:
    """Destroy and undefine <basename>NN for every serial in the range, removing storage."""
    if not args or len(args) != 2:
        console.print("Usage: kvm-fleet destroy <basename> <serial_range>")
        console.print("Example: kvm-fleet destroy vmguest 01-07")
        raise typer.Exit(1)

    basename, serial_range = args
    try:
        start, end = parse_serial_range(serial_range)
        outcomes = decommission_range(basename, start, end, build_hypervisor_client())
    except FleetValidationError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)

    for outcome in outcomes:
        if outcome.status == OutcomeStatus.DESTROYED:
            console.print(f"{outcome.vm_name} destroyed and storage removed.")
        elif outcome.status == OutcomeStatus.NOT_FOUND:
            console.print(f"{outcome.vm_name} does not exist.")
        else:
            console.print(f"[red]{outcome.vm_name} failed: {escape(outcome.detail or '')}[/red]")
    if any(o.failed for o in outcomes):
        raise typer.Exit(1)


@app.command("create")
def create(
    basename: str = typer.Option(..., help="Base name, suffixed with a two-digit serial"),
    vm_count: int = typer.Option(..., help="Number of VMs to clone"),
    network_bridge: str = typer.Option(..., help="Host bridge for the guest NIC"),
    vcpu: int = typer.Option(..., help="vCPUs per VM"),
    memory: int = typer.Option(..., help="Memory per VM in MB"),
    base_ip: str = typer.Option(..., help="Address of the first VM"),
    mask: int = typer.Option(..., help="Prefix length, e.g. 24"),
    gw: str = typer.Option(..., help="Default gateway"),
    start_serial: int = typer.Option(1, help="Serial of the first VM"),
    template: str | None = typer.Option(None, help="Template VM, defaults to KVM_FLEET_TEMPLATE_VM"),
    workers: int | None = typer.Option(None, help="Concurrent provisioning workers"),
    policy: FailurePolicy | None = typer.Option(None, help="What to do after a VM fails"),
) -> None:
    """Clone the template into a numbered fleet and configure every member."""
    settings = get_settings()
    try:
        specs = plan_fleet(
            _fleet_request(
                basename, vm_count, start_serial, network_bridge, vcpu, memory,
                base_ip, mask, gw, template,
            )
        )
    except FleetValidationError as exc:
        console.print(f"[red]invalid fleet request: {escape(str(exc))}[/red]")
        raise typer.Exit(2)

    outcomes = provision_fleet(
        specs,
        build_hypervisor_client(settings),
        build_guest_client(settings),
        policy=policy or FailurePolicy(settings.failure_policy),
        max_workers=workers or settings.max_workers,
        settings=settings,
    )
    console.print(_outcome_table(f"Fleet {basename}", outcomes))
    if any(o.failed for o in outcomes):
        raise typer.Exit(1)


@app.command("plan")
def plan(
    basename: str = typer.Option(...),
    vm_count: int = typer.Option(...),
    network_bridge: str = typer.Option("br0"),
    vcpu: int = typer.Option(2),
    memory: int = typer.Option(2048),
    base_ip: str = typer.Option(...),
    mask: int = typer.Option(...),
    gw: str = typer.Option(...),
    start_serial: int = typer.Option(1),
    template: str | None = typer.Option(None),
) -> None:
    """Show the VMs a create run would build, without touching the hypervisor."""
    try:
        specs = plan_fleet(
            _fleet_request(
                basename, vm_count, start_serial, network_bridge, vcpu, memory,
                base_ip, mask, gw, template,
            )
        )
    except FleetValidationError as exc:
        console.print(f"[red]invalid fleet request: {escape(str(exc))}[/red]")
        raise typer.Exit(2)

    table = Table(title=f"Plan {basename}")
    for column in ("VM", "Address", "Gateway", "Bridge", "vCPU", "Memory MB", "Template"):
        table.add_column(column)
    for spec in specs:
        table.add_row(
            spec.name,
            spec.cidr,
            str(spec.gateway),
            spec.bridge,
            str(spec.vcpu),
            str(spec.memory_mb),
            spec.template_vm,
        )
    console.print(table)


@app.command("status")
def status(
    basename: str | None = typer.Option(None, help="Only show this fleet"),
) -> None:
    """List recorded provisioning state."""
    with session_scope() as session:
        records = list_records(session, basename=basename)
        rows = [
            (
                r.vm_name,
                r.ip_address,
                r.state,
                r.last_completed_state,
                r.failed_step or "",
                escape(r.last_error or ""),
            )
            for r in records
        ]
    if not rows:
        console.print("No VMs recorded.")
        return
    table = Table(title="Provisioning state")
    for column in ("VM", "Address", "State", "Last completed", "Failed step", "Error"):
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*row)
    console.print(table)


@app.command("forget")
def forget(vm_name: str = typer.Argument(...)) -> None:
    """Drop the state record of a VM without touching the hypervisor."""
    with session_scope() as session:
        removed = delete_record(session, vm_name, "vm.forgotten")
    if not removed:
        console.print(f"{vm_name} has no state record.")
        raise typer.Exit(1)
    console.print(f"{vm_name} forgotten.")


@app.command("reconcile")
def reconcile(
    basename: str | None = typer.Option(None, help="Only check this fleet"),
) -> None:
    """Remove state records of VMs that no longer exist on the hypervisor."""
    pruned = prune_missing(build_hypervisor_client(), basename=basename)
    if not pruned:
        console.print("State matches the hypervisor.")
        return
    for vm_name in pruned:
        console.print(f"{vm_name}: record removed, domain is gone.")


@app.command("serve")
def serve(
    host: str | None = typer.Option(None, help="Bind address"),
    port: int | None = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the read-mostly state API."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "kvm_fleet.main:app",
        host=host or settings.bind_host,
        port=port or settings.bind_port,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
