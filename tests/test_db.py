import pytest
from sqlalchemy import text

from kvm_fleet.db import SQLITE_BUSY_TIMEOUT_SEC, Base, engine, session_scope
from kvm_fleet.models import VmRecord


def setup_function() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


def test_every_sqlite_connection_waits_for_locks():
    with engine.connect() as first, engine.connect() as second:
        for conn in (first, second):
            assert conn.execute(text("PRAGMA busy_timeout")).scalar() == (
                SQLITE_BUSY_TIMEOUT_SEC * 1000
            )
            assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"


def test_session_scope_rolls_back_on_error():
    with pytest.raises(RuntimeError):
        with session_scope() as session:
            session.add(
                VmRecord(
                    vm_name="lab99",
                    basename="lab",
                    serial=99,
                    ip_address="10.9.9.99",
                    mask=24,
                    gateway="10.9.9.1",
                    bridge="br10",
                    vcpu=1,
                    memory_mb=512,
                    template_vm="ubuntu20.04-30G",
                    state="PLANNED",
                    last_completed_state="PLANNED",
                )
            )
            raise RuntimeError("abort")

    with session_scope() as session:
        assert session.get(VmRecord, "lab99") is None
