from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from kvm_fleet.db import Base


class ProvisioningState(str, Enum):
    PLANNED = "PLANNED"
    CLONED = "CLONED"
    CONFIGURED = "CONFIGURED"
    NETWORK_ATTACHED = "NETWORK_ATTACHED"
    CUSTOMIZED = "CUSTOMIZED"
    STARTED = "STARTED"
    REACHABLE = "REACHABLE"
    FAILED = "FAILED"


class VmRecord(Base):
    __tablename__ = "vm_records"

    vm_name: Mapped[str] = mapped_column(String(128), primary_key=True)
    basename: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    serial: Mapped[int] = mapped_column(Integer, nullable=False)
    ip_address: Mapped[str] = mapped_column(String(64), nullable=False)
    mask: Mapped[int] = mapped_column(Integer, nullable=False)
    gateway: Mapped[str] = mapped_column(String(64), nullable=False)
    bridge: Mapped[str] = mapped_column(String(64), nullable=False)
    vcpu: Mapped[int] = mapped_column(Integer, nullable=False)
    memory_mb: Mapped[int] = mapped_column(Integer, nullable=False)
    template_vm: Mapped[str] = mapped_column(String(128), nullable=False)

    state: Mapped[str] = mapped_column(
        String(32), default=ProvisioningState.PLANNED.value, nullable=False
    )
    last_completed_state: Mapped[str] = mapped_column(
        String(32), default=ProvisioningState.PLANNED.value, nullable=False
    )
    failed_step: Mapped[str | None] = mapped_column(String(64))
    last_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    vm_name: Mapped[str | None] = mapped_column(String(128), index=True)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
