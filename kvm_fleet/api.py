from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from kvm_fleet.db import SessionLocal
from kvm_fleet.errors import FleetValidationError
from kvm_fleet.metrics import metrics
from kvm_fleet.repositories import delete_record, get_record, list_records
from kvm_fleet.schemas import FleetRequest, VmRecordRead, VmSpec
from kvm_fleet.services.planner import plan_fleet


router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/v1/vms", response_model=list[VmRecordRead])
def get_vms(
    basename: str | None = Query(default=None),
    state: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[VmRecordRead]:
    records = list_records(db, basename=basename, state=state)
    return [VmRecordRead.model_validate(r) for r in records]


@router.get("/v1/vms/{vm_name}", response_model=VmRecordRead)
def get_vm(vm_name: str, db: Session = Depends(get_db)) -> VmRecordRead:
    record = get_record(db, vm_name)
    if record is None:
        raise HTTPException(status_code=404, detail="unknown vm")
    return VmRecordRead.model_validate(record)


@router.delete("/v1/vms/{vm_name}")
def forget_vm(vm_name: str, db: Session = Depends(get_db)) -> dict[str, bool]:
    if not delete_record(db, vm_name, "vm.forgotten"):
        raise HTTPException(status_code=404, detail="unknown vm")
    db.commit()
    return {"ok": True}


@router.post("/v1/fleets/plan", response_model=list[VmSpec])
def plan(req: FleetRequest) -> list[VmSpec]:
    try:
        return plan_fleet(req)
    except FleetValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
