import json
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional

from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, Enum):
    RECEPTIONIST = "RECEPTIONIST"
    DOCTOR = "DOCTOR"
    NURSE = "NURSE"
    ADMIN = "ADMIN"


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class AppointmentAction(str, Enum):
    CONFIRM = "CONFIRM"
    CHECK_IN = "CHECK_IN"
    START = "START"
    COMPLETE = "COMPLETE"
    CANCEL = "CANCEL"
    NO_SHOW = "NO_SHOW"


class AppointmentType(str, Enum):
    GENERAL_CONSULTATION = "GENERAL_CONSULTATION"
    FOLLOW_UP = "FOLLOW_UP"
    SPECIALIST = "SPECIALIST"
    EMERGENCY = "EMERGENCY"
    ROUTINE_CHECKUP = "ROUTINE_CHECKUP"
    PROCEDURE = "PROCEDURE"


class InvoiceStatus(str, Enum):
    DRAFT = "DRAFT"
    ISSUED = "ISSUED"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    CANCELLED = "CANCELLED"
    WRITTEN_OFF = "WRITTEN_OFF"


class InvoiceAction(str, Enum):
    ISSUE = "ISSUE"
    CANCEL = "CANCEL"
    WRITE_OFF = "WRITE_OFF"
    RECORD_PAYMENT = "RECORD_PAYMENT"


class PaymentMethod(str, Enum):
    CASH = "CASH"
    CARD = "CARD"
    INSURANCE = "INSURANCE"
    BANK_TRANSFER = "BANK_TRANSFER"
    CHEQUE = "CHEQUE"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    name: str
    password_hash: str
    role: UserRole
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Appointment(SQLModel, table=True):
    id: str = Field(primary_key=True)
    patient_id: str = Field(index=True)
    doctor_id: str = Field(index=True)
    appointment_date: date
    start_time: time
    duration_minutes: int
    type: AppointmentType
    reason: str = ""
    notes: str = ""
    cancel_reason: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    version: int = 0
    created_by: str = ""
    updated_by: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Invoice(SQLModel, table=True):
    """Monetary values are stored as decimal strings; totals are derived on read."""

    id: str = Field(primary_key=True)
    appointment_id: str = Field(unique=True, index=True)
    patient_id: str = Field(index=True)
    status: InvoiceStatus = InvoiceStatus.DRAFT
    discount_percent: str = "0"
    tax_rate: str = "0"
    line_items_json: str = Field(default="[]")
    payments_json: str = Field(default="[]")
    notes: str = ""
    cancel_reason: Optional[str] = None
    version: int = 0
    created_by: str = ""
    updated_by: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def line_items(self) -> list[dict]:
        return json.loads(self.line_items_json)

    @property
    def payments(self) -> list[dict]:
        return json.loads(self.payments_json)
