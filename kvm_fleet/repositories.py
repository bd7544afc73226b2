import json
import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from kvm_fleet.errors import InvalidTransition
from kvm_fleet.models import Event, ProvisioningState, VmRecord
from kvm_fleet.schemas import VmSpec
from kvm_fleet.state_machine import can_transition


logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session, event_type: str, payload: dict, vm_name: str | None = None
) -> None:
    session.add(
        Event(
            vm_name=vm_name,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True),
        )
    )


def get_record(session: Session, vm_name: str) -> VmRecord | None:
    return session.get(VmRecord, vm_name)


def list_records(
    session: Session, basename: str | None = None, state: str | None = None
) -> list[VmRecord]:
    query = select(VmRecord)
    if basename:
        query = query.where(VmRecord.basename == basename)
    if state:
        query = query.where(VmRecord.state == state)
    return list(session.scalars(query.order_by(VmRecord.vm_name.asc())))


def list_events(session: Session, vm_name: str | None = None, limit: int = 100) -> list[Event]:
    query = select(Event)
    if vm_name:
        query = query.where(Event.vm_name == vm_name)
    return list(session.scalars(query.order_by(Event.id.desc()).limit(limit)))


def ensure_record(session: Session, spec: VmSpec) -> VmRecord:
    """Return the record for ``spec``, creating it in PLANNED if missing.

    An existing record keeps its progress; only the requested parameters are
    refreshed so a resumed run renders the same configuration.
    """
    record = get_record(session, spec.name)
    if record is None:
        now = now_utc()
        record = VmRecord(
            vm_name=spec.name,
            basename=spec.basename,
            serial=spec.serial,
            ip_address=str(spec.ip_address),
            mask=spec.mask,
            gateway=str(spec.gateway),
            bridge=spec.bridge,
            vcpu=spec.vcpu,
            memory_mb=spec.memory_mb,
            template_vm=spec.template_vm,
            state=ProvisioningState.PLANNED.value,
            last_completed_state=ProvisioningState.PLANNED.value,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        write_event(
            session,
            "vm.planned",
            {"ip_address": str(spec.ip_address), "template_vm": spec.template_vm},
            spec.name,
        )
        return record

    if record.ip_address != str(spec.ip_address):
        logger.warning(
            "planned address changed vm=%s recorded=%s requested=%s",
            spec.name,
            record.ip_address,
            spec.ip_address,
        )
    record.ip_address = str(spec.ip_address)
    record.mask = spec.mask
    record.gateway = str(spec.gateway)
    record.bridge = spec.bridge
    record.vcpu = spec.vcpu
    record.memory_mb = spec.memory_mb
    record.template_vm = spec.template_vm
    record.updated_at = now_utc()
    return record


def mark_stage_completed(session: Session, record: VmRecord, target: str) -> None:
    if not can_transition(record.state, target, record.last_completed_state):
        raise InvalidTransition(
            f"{record.vm_name}: cannot move from {record.state} to {target}"
        )
    record.state = target
    record.last_completed_state = target
    record.failed_step = None
    record.last_error = None
    record.updated_at = now_utc()
    write_event(session, "vm.stage_completed", {"state": target}, record.vm_name)


def mark_failed(session: Session, record: VmRecord, step: str, error: str) -> None:
    record.state = ProvisioningState.FAILED.value
    record.failed_step = step
    record.last_error = error
    record.updated_at = now_utc()
    write_event(
        session,
        "vm.failed",
        {
            "step": step,
            "error": error,
            "last_completed_state": record.last_completed_state,
        },
        record.vm_name,
    )


def delete_record(session: Session, vm_name: str, reason: str) -> bool:
    record = get_record(session, vm_name)
    if record is None:
        return False
    session.delete(record)
    write_event(
        session,
        reason,
        {"state": record.state, "last_completed_state": record.last_completed_state},
        vm_name,
    )
    return True
