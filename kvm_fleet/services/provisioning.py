import logging
import shlex
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from kvm_fleet.clients.guest import GuestClient
from kvm_fleet.clients.hypervisor import HypervisorClient
from kvm_fleet.config import Settings, get_settings
from kvm_fleet.db import session_scope
from kvm_fleet.errors import (
    CommandFailure,
    HypervisorCallFailed,
    ProvisioningError,
    StepTimeout,
)
from kvm_fleet.metrics import metrics
from kvm_fleet.models import ProvisioningState
from kvm_fleet.netplan import GUEST_NETPLAN_PATH, transient_netplan
from kvm_fleet.repositories import (
    ensure_record,
    get_record,
    mark_failed,
    mark_stage_completed,
)
from kvm_fleet.schemas import FailurePolicy, OutcomeStatus, VmOutcome, VmSpec
from kvm_fleet.state_machine import is_completed, is_terminal_success


logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    spec: VmSpec
    hypervisor: HypervisorClient
    guest: GuestClient
    settings: Settings

    @property
    def host(self) -> str:
        return str(self.spec.ip_address)


@dataclass
class PipelineStep:
    name: str
    run: Callable[[StepContext], None]
    on_hypervisor: bool = True


@dataclass
class Stage:
    state: ProvisioningState
    steps: list[PipelineStep]


def _clone(ctx: StepContext) -> None:
    if not ctx.settings.dry_run and ctx.hypervisor.domain_exists(ctx.spec.name):
        logger.info("domain already defined, keeping clone vm=%s", ctx.spec.name)
        return
    ctx.hypervisor.clone(ctx.spec.template_vm, ctx.spec.name)


def _set_resources(ctx: StepContext) -> None:
    name, vcpu, memory_mb = ctx.spec.name, ctx.spec.vcpu, ctx.spec.memory_mb
    # maxima first, libvirt rejects a current value above the configured max
    ctx.hypervisor.set_vcpus(name, vcpu, maximum=True)
    ctx.hypervisor.set_memory(name, memory_mb, maximum=True)
    ctx.hypervisor.set_memory(name, memory_mb)
    ctx.hypervisor.set_vcpus(name, vcpu)


def _attach_network(ctx: StepContext) -> None:
    name, bridge = ctx.spec.name, ctx.spec.bridge
    nics = ctx.hypervisor.interfaces(name)
    for nic_type, _source, mac in nics:
        if nic_type == "network":
            ctx.hypervisor.detach_interface(name, "network", mac=mac)
    if any(t == "bridge" and source == bridge for t, source, _mac in nics):
        logger.info("bridge already attached vm=%s bridge=%s", name, bridge)
        return
    ctx.hypervisor.attach_bridge(name, bridge)


def _upload_network_config(ctx: StepContext) -> None:
    with transient_netplan(
        ctx.spec,
        transient_dir=ctx.settings.transient_dir,
        interface=ctx.settings.guest_interface,
        dns_servers=ctx.settings.dns_servers,
    ) as path:
        ctx.hypervisor.customize(
            ctx.spec.name,
            run_commands=["rm -f /etc/netplan/*.yaml"],
            uploads=[(str(path), GUEST_NETPLAN_PATH)],
        )


def _regenerate_host_keys(ctx: StepContext) -> None:
    ctx.hypervisor.customize(ctx.spec.name, run_commands=["ssh-keygen -A"])


def _start(ctx: StepContext) -> None:
    ctx.hypervisor.start(ctx.spec.name)


def _wait_reachable(ctx: StepContext) -> None:
    ctx.guest.wait_for_ssh(
        ctx.host,
        timeout_sec=ctx.settings.ssh_timeout_sec,
        initial_delay_sec=ctx.settings.ssh_initial_delay_sec,
    )


def hostname_script(vm_name: str, ip_address: str) -> str:
    name = shlex.quote(vm_name)
    hosts = shlex.quote(f"127.0.0.1 localhost\n{ip_address} {vm_name}\n")
    return (
        f"echo {name} > /etc/hostname"
        f" && hostnamectl set-hostname {name}"
        f" && printf '%s' {hosts} > /etc/hosts"
    )


def _set_hostname(ctx: StepContext) -> None:
    ctx.guest.run(ctx.host, hostname_script(ctx.spec.name, ctx.host))


def _reboot(ctx: StepContext) -> None:
    ctx.guest.reboot_and_wait(ctx.host, timeout_sec=ctx.settings.reboot_timeout_sec)


PIPELINE: list[Stage] = [
    Stage(ProvisioningState.CLONED, [PipelineStep("clone", _clone)]),
    Stage(ProvisioningState.CONFIGURED, [PipelineStep("set_resources", _set_resources)]),
    Stage(
        ProvisioningState.NETWORK_ATTACHED,
        [PipelineStep("attach_network", _attach_network)],
    ),
    Stage(
        ProvisioningState.CUSTOMIZED,
        [
            PipelineStep("upload_network_config", _upload_network_config),
            PipelineStep("regenerate_host_keys", _regenerate_host_keys),
        ],
    ),
    Stage(ProvisioningState.STARTED, [PipelineStep("start", _start)]),
    Stage(
        ProvisioningState.REACHABLE,
        [
            PipelineStep("wait_reachable", _wait_reachable, on_hypervisor=False),
            PipelineStep("set_hostname", _set_hostname, on_hypervisor=False),
            PipelineStep("reboot", _reboot, on_hypervisor=False),
        ],
    ),
]


def _as_provisioning_error(
    step: PipelineStep, vm_name: str, exc: Exception
) -> ProvisioningError:
    if isinstance(exc, ProvisioningError):
        return exc
    if isinstance(exc, TimeoutError):
        return StepTimeout(step=step.name, vm_name=vm_name, detail=str(exc))
    if isinstance(exc, CommandFailure) and step.on_hypervisor:
        return HypervisorCallFailed(step=step.name, vm_name=vm_name, detail=str(exc))
    return ProvisioningError(step=step.name, vm_name=vm_name, detail=str(exc))


def _record_failure(vm_name: str, error: ProvisioningError) -> str | None:
    with session_scope() as session:
        record = get_record(session, vm_name)
        if record is None:
            logger.warning("state record vanished vm=%s", vm_name)
            return None
        mark_failed(session, record, error.step, str(error))
        return record.last_completed_state


def _record_stage(vm_name: str, state: ProvisioningState) -> None:
    with session_scope() as session:
        record = get_record(session, vm_name)
        if record is None:
            logger.warning("state record vanished vm=%s", vm_name)
            return
        mark_stage_completed(session, record, state.value)


def provision_one(
    spec: VmSpec,
    hypervisor: HypervisorClient,
    guest: GuestClient,
    settings: Settings | None = None,
) -> VmOutcome:
    """Drive ``spec`` through the pipeline, resuming after its last completed stage."""
    settings = settings or get_settings()
    with session_scope() as session:
        if settings.dry_run:
            # dry runs only read state
            record = get_record(session, spec.name)
        else:
            record = ensure_record(session, spec)
        last_completed = (
            record.last_completed_state if record else ProvisioningState.PLANNED.value
        )

    if is_terminal_success(last_completed):
        logger.info("vm already provisioned vm=%s", spec.name)
        metrics.inc("vms_already_provisioned_total")
        return VmOutcome(
            vm_name=spec.name,
            status=OutcomeStatus.ALREADY_PROVISIONED,
            state=last_completed,
        )

    if last_completed != ProvisioningState.PLANNED.value:
        logger.info("resuming vm=%s after=%s", spec.name, last_completed)

    ctx = StepContext(spec=spec, hypervisor=hypervisor, guest=guest, settings=settings)
    for stage in PIPELINE:
        if is_completed(stage.state.value, last_completed):
            continue
        for step in stage.steps:
            logger.info("step start vm=%s step=%s", spec.name, step.name)
            try:
                step.run(ctx)
            except Exception as exc:  # noqa: BLE001
                error = _as_provisioning_error(step, spec.name, exc)
                logger.warning("%s", error)
                if settings.dry_run:
                    retained = last_completed
                else:
                    retained = _record_failure(spec.name, error)
                metrics.inc("vms_failed_total")
                return VmOutcome(
                    vm_name=spec.name,
                    status=OutcomeStatus.FAILED,
                    state=retained,
                    failed_step=step.name,
                    detail=error.detail,
                )
        if not settings.dry_run:
            _record_stage(spec.name, stage.state)
        metrics.inc("stages_completed_total")
        last_completed = stage.state.value
        logger.info("stage completed vm=%s state=%s", spec.name, last_completed)

    metrics.inc("vms_provisioned_total")
    return VmOutcome(
        vm_name=spec.name, status=OutcomeStatus.PROVISIONED, state=last_completed
    )


def provision_fleet(
    specs: list[VmSpec],
    hypervisor: HypervisorClient,
    guest: GuestClient,
    *,
    policy: FailurePolicy = FailurePolicy.CONTINUE_ON_ERROR,
    max_workers: int = 1,
    settings: Settings | None = None,
) -> list[VmOutcome]:
    """Provision every spec independently and return outcomes in plan order.

    With ``abort-fleet`` a failure stops VMs that have not begun yet; those
    already running finish their own pipeline.
    """
    settings = settings or get_settings()
    abort = threading.Event()

    def worker(spec: VmSpec) -> VmOutcome:
        if abort.is_set():
            logger.info("skipping vm=%s after fleet abort", spec.name)
            return VmOutcome(
                vm_name=spec.name,
                status=OutcomeStatus.ABORTED,
                detail="not started: fleet aborted after an earlier failure",
            )
        outcome = provision_one(spec, hypervisor, guest, settings)
        if outcome.failed and policy == FailurePolicy.ABORT_FLEET:
            abort.set()
        return outcome

    logger.info(
        "provisioning fleet size=%s workers=%s policy=%s",
        len(specs),
        max_workers,
        policy.value,
    )
    with ThreadPoolExecutor(
        max_workers=max(1, max_workers), thread_name_prefix="provision"
    ) as pool:
        outcomes = list(pool.map(worker, specs))

    failed = [o.vm_name for o in outcomes if o.failed]
    if failed:
        logger.warning("fleet finished with failures vms=%s", ",".join(failed))
    else:
        logger.info("fleet finished size=%s", len(outcomes))
    return outcomes
