from typing import Any, cast

from fakes import FakeGuest, FakeHypervisor

from kvm_fleet.config import get_settings
from kvm_fleet.db import Base, SessionLocal, engine
from kvm_fleet.models import Event, VmRecord
from kvm_fleet.schemas import FleetRequest, OutcomeStatus
from kvm_fleet.services.decommission import (
    decommission,
    decommission_range,
    prune_missing,
)
from kvm_fleet.services.planner import plan_fleet
from kvm_fleet.services.provisioning import provision_fleet


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def _provision(basename: str, vm_count: int, hypervisor: FakeHypervisor) -> None:
    specs = plan_fleet(
        FleetRequest.from_count(
            vm_count=vm_count,
            basename=basename,
            base_ip="10.9.9.100",
            mask=24,
            gateway="10.9.9.1",
        )
    )
    provision_fleet(specs, cast(Any, hypervisor), cast(Any, FakeGuest()))


def _record_names() -> list[str]:
    db = SessionLocal()
    names = [r.vm_name for r in db.query(VmRecord).order_by(VmRecord.vm_name).all()]
    db.close()
    return names


def test_vmguest_range_destroys_existing_and_reports_missing():
    hypervisor = FakeHypervisor(existing={"vmguest01", "vmguest03"})

    outcomes = decommission_range("vmguest", 1, 3, cast(Any, hypervisor))

    assert [(o.vm_name, o.status) for o in outcomes] == [
        ("vmguest01", OutcomeStatus.DESTROYED),
        ("vmguest02", OutcomeStatus.NOT_FOUND),
        ("vmguest03", OutcomeStatus.DESTROYED),
    ]
    assert ("undefine", "vmguest01", True) in hypervisor.calls
    assert ("undefine", "vmguest03", True) in hypervisor.calls
    assert not any(c[0] == "destroy" and c[1] == "vmguest02" for c in hypervisor.calls)
    assert hypervisor.domains == set()


def test_destroyed_vm_no_longer_exists():
    hypervisor = FakeHypervisor(existing={"lab01"})
    decommission(["lab01"], cast(Any, hypervisor))
    assert not hypervisor.domain_exists("lab01")


def test_missing_vm_is_a_noop():
    hypervisor = FakeHypervisor()
    outcomes = decommission(["ghost01"], cast(Any, hypervisor))
    assert outcomes[0].status == OutcomeStatus.NOT_FOUND
    assert not outcomes[0].failed
    assert hypervisor.mutations() == []


def test_undefine_failure_does_not_stop_batch():
    hypervisor = FakeHypervisor(
        existing={"vmguest01", "vmguest02"}, fail_undefine={"vmguest01"}
    )

    outcomes = decommission_range("vmguest", 1, 2, cast(Any, hypervisor))

    assert outcomes[0].status == OutcomeStatus.FAILED
    assert outcomes[0].detail == "busy"
    assert outcomes[1].status == OutcomeStatus.DESTROYED
    assert "vmguest01" in hypervisor.domains


def test_destroy_removes_state_records():
    hypervisor = FakeHypervisor()
    _provision("lab", 2, hypervisor)
    assert _record_names() == ["lab01", "lab02"]

    decommission_range("lab", 1, 1, cast(Any, hypervisor))

    assert _record_names() == ["lab02"]
    db = SessionLocal()
    destroyed = db.query(Event).filter(Event.event_type == "vm.destroyed").all()
    db.close()
    assert [e.vm_name for e in destroyed] == ["lab01"]


def test_dry_run_destroy_keeps_state_records():
    hypervisor = FakeHypervisor()
    _provision("lab", 2, hypervisor)
    settings = get_settings().model_copy(update={"dry_run": True})

    outcomes = decommission_range("lab", 1, 3, cast(Any, hypervisor), settings)

    assert [o.status for o in outcomes] == [
        OutcomeStatus.DESTROYED,
        OutcomeStatus.DESTROYED,
        OutcomeStatus.NOT_FOUND,
    ]
    assert _record_names() == ["lab01", "lab02"]


def test_prune_missing_drops_records_of_vanished_domains():
    hypervisor = FakeHypervisor()
    _provision("lab", 2, hypervisor)
    hypervisor.domains.discard("lab02")

    pruned = prune_missing(cast(Any, hypervisor))

    assert pruned == ["lab02"]
    assert _record_names() == ["lab01"]
