import logging

from kvm_fleet.clients.hypervisor import HypervisorClient
from kvm_fleet.config import Settings, get_settings
from kvm_fleet.db import session_scope
from kvm_fleet.errors import CommandFailure, VmNotFound
from kvm_fleet.metrics import metrics
from kvm_fleet.models import ProvisioningState
from kvm_fleet.repositories import delete_record, list_records, write_event
from kvm_fleet.schemas import OutcomeStatus, VmOutcome
from kvm_fleet.services.planner import serial_names


logger = logging.getLogger(__name__)


def destroy_vm(vm_name: str, hypervisor: HypervisorClient) -> None:
    """Force off and undefine ``vm_name`` with its storage.

    Raises ``VmNotFound`` when the hypervisor does not know the domain.
    """
    if not hypervisor.domain_exists(vm_name):
        raise VmNotFound(vm_name)
    logger.info("Destroying and undefining %s...", vm_name)
    hypervisor.destroy(vm_name)
    hypervisor.undefine(vm_name, remove_storage=True)


def decommission(
    names: list[str], hypervisor: HypervisorClient, settings: Settings | None = None
) -> list[VmOutcome]:
    """Destroy each VM in turn. A failure is reported for that VM only.

    Dry runs leave the state records untouched.
    """
    settings = settings or get_settings()
    outcomes: list[VmOutcome] = []
    for vm_name in names:
        try:
            destroy_vm(vm_name, hypervisor)
        except VmNotFound as exc:
            logger.info("%s", exc)
            if not settings.dry_run:
                with session_scope() as session:
                    if not delete_record(session, vm_name, "vm.record_pruned"):
                        write_event(session, "vm.not_found", {}, vm_name)
            metrics.inc("vms_not_found_total")
            outcomes.append(
                VmOutcome(vm_name=vm_name, status=OutcomeStatus.NOT_FOUND, detail=str(exc))
            )
            continue
        except CommandFailure as exc:
            logger.warning("decommission failed vm=%s detail=%s", vm_name, exc)
            if not settings.dry_run:
                with session_scope() as session:
                    write_event(
                        session, "vm.destroy_failed", {"error": str(exc)}, vm_name
                    )
            metrics.inc("vms_destroy_failed_total")
            outcomes.append(
                VmOutcome(
                    vm_name=vm_name,
                    status=OutcomeStatus.FAILED,
                    failed_step="destroy",
                    detail=exc.detail,
                )
            )
            continue

        if not settings.dry_run:
            with session_scope() as session:
                if not delete_record(session, vm_name, "vm.destroyed"):
                    write_event(session, "vm.destroyed", {}, vm_name)
        metrics.inc("vms_destroyed_total")
        logger.info("%s destroyed and storage removed.", vm_name)
        outcomes.append(VmOutcome(vm_name=vm_name, status=OutcomeStatus.DESTROYED))
    return outcomes


def decommission_range(
    basename: str,
    start: int,
    end: int,
    hypervisor: HypervisorClient,
    settings: Settings | None = None,
) -> list[VmOutcome]:
    return decommission(serial_names(basename, start, end), hypervisor, settings)


def prune_missing(hypervisor: HypervisorClient, basename: str | None = None) -> list[str]:
    """Drop state records whose domain no longer exists on the hypervisor.

    Records still in PLANNED never had a domain and are kept.
    """
    with session_scope() as session:
        candidates = [
            r.vm_name
            for r in list_records(session, basename=basename)
            if r.last_completed_state != ProvisioningState.PLANNED.value
        ]

    pruned: list[str] = []
    for vm_name in candidates:
        if hypervisor.domain_exists(vm_name):
            continue
        with session_scope() as session:
            if delete_record(session, vm_name, "vm.record_pruned"):
                pruned.append(vm_name)
                logger.info("pruned state record vm=%s", vm_name)
    return pruned
