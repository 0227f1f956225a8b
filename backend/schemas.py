"""Wire records exchanged with the remote service.

The service uses them as request bodies and response models; the client
parses every response through them, so unknown statuses or actions are
rejected at the boundary instead of reaching the authorizer.
"""

from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import (
    AppointmentAction,
    AppointmentStatus,
    AppointmentType,
    InvoiceAction,
    InvoiceStatus,
    PaymentMethod,
)

ALLOWED_DURATIONS = (15, 30, 45, 60, 90, 120)


class AppointmentCreate(BaseModel):
    patient_id: str = Field(min_length=1, max_length=64)
    doctor_id: str = Field(min_length=1, max_length=64)
    appointment_date: date
    start_time: time
    duration_minutes: int = 30
    type: AppointmentType = AppointmentType.GENERAL_CONSULTATION
    reason: str = Field(default="", max_length=500)
    notes: str = Field(default="", max_length=2000)

    @field_validator("duration_minutes")
    @classmethod
    def _known_duration(cls, value: int) -> int:
        if value not in ALLOWED_DURATIONS:
            raise ValueError(f"duration_minutes must be one of: {', '.join(map(str, ALLOWED_DURATIONS))}")
        return value


class AppointmentStatusChange(BaseModel):
    action: AppointmentAction
    reason: Optional[str] = Field(default=None, max_length=500)
    version: int = Field(ge=0)


class LineItemIn(BaseModel):
    service_code: str = Field(min_length=1, max_length=32)
    description: str = Field(min_length=1, max_length=200)
    quantity: int = Field(ge=1)
    unit_price: Decimal = Field(gt=0, decimal_places=2)


class InvoiceCreate(BaseModel):
    appointment_id: str = Field(min_length=1, max_length=64)
    line_items: list[LineItemIn] = Field(min_length=1, max_length=100)
    discount_percent: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    notes: str = Field(default="", max_length=2000)


class InvoiceStatusChange(BaseModel):
    action: InvoiceAction
    reason: Optional[str] = Field(default=None, max_length=500)
    version: int = Field(ge=0)


class PaymentIn(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    method: PaymentMethod
    reference: Optional[str] = Field(default=None, max_length=64)
    notes: Optional[str] = Field(default=None, max_length=500)


class PaymentCreate(PaymentIn):
    version: int = Field(ge=0)


class AppointmentOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    patient_id: str
    doctor_id: str
    appointment_date: date
    start_time: time
    duration_minutes: int
    type: AppointmentType
    reason: str = ""
    notes: str = ""
    cancel_reason: Optional[str] = None
    status: AppointmentStatus
    version: int
    updated_by: str = ""
    updated_at: Optional[datetime] = None


class LineItemOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    service_code: str
    description: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


class PaymentOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount: Decimal
    method: PaymentMethod
    reference: Optional[str] = None
    notes: Optional[str] = None
    recorded_by: str
    paid_at: datetime


class InvoiceOut(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    appointment_id: str
    patient_id: str
    status: InvoiceStatus
    line_items: tuple[LineItemOut, ...]
    payments: tuple[PaymentOut, ...] = ()
    total_amount: Decimal
    discount_percent: Decimal
    discount_amount: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    net_amount: Decimal
    amount_paid: Decimal
    amount_due: Decimal
    notes: str = ""
    cancel_reason: Optional[str] = None
    version: int
    updated_by: str = ""
    updated_at: Optional[datetime] = None


class BillingTerms(BaseModel):
    tax_rate: Decimal
