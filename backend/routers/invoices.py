import json
import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session, select

from database import get_session
from models import Appointment, Invoice, InvoiceAction, User, UserRole, utcnow
from schemas import (
    BillingTerms,
    InvoiceCreate,
    InvoiceOut,
    InvoiceStatusChange,
    LineItemOut,
    PaymentCreate,
    PaymentOut,
)
from services.access import authorize
from services.auth import get_current_user, require_roles
from services.billing import (
    amount_due,
    amount_paid,
    compute_totals,
    configured_tax_rate,
    derive_payment_status,
    money,
    to_decimal,
)
from services.versioning import bump_version, ensure_version
from state_machine import INITIAL_STATES

router = APIRouter(prefix="/invoices", tags=["invoices"])
terms_router = APIRouter(prefix="/billing", tags=["billing"])

requires_billing_staff = require_roles(UserRole.RECEPTIONIST, UserRole.ADMIN)
requires_invoice_reader = require_roles(UserRole.RECEPTIONIST, UserRole.ADMIN, UserRole.DOCTOR)


def invoice_response(invoice: Invoice) -> InvoiceOut:
    items = invoice.line_items
    payments = invoice.payments
    totals = compute_totals(items, invoice.discount_percent, invoice.tax_rate)
    paid = amount_paid(payments)
    return InvoiceOut(
        id=invoice.id,
        appointment_id=invoice.appointment_id,
        patient_id=invoice.patient_id,
        status=invoice.status,
        line_items=tuple(
            LineItemOut(
                service_code=item["service_code"],
                description=item["description"],
                quantity=item["quantity"],
                unit_price=to_decimal(item["unit_price"]),
                line_total=money(to_decimal(item["unit_price"]) * item["quantity"]),
            )
            for item in items
        ),
        payments=tuple(PaymentOut(**payment) for payment in payments),
        total_amount=totals.total_amount,
        discount_percent=totals.discount_percent,
        discount_amount=totals.discount_amount,
        tax_rate=totals.tax_rate,
        tax_amount=totals.tax_amount,
        net_amount=totals.net_amount,
        amount_paid=paid,
        amount_due=amount_due(totals.net_amount, paid),
        notes=invoice.notes,
        cancel_reason=invoice.cancel_reason,
        version=invoice.version,
        updated_by=invoice.updated_by,
        updated_at=invoice.updated_at,
    )


def _get_invoice(invoice_id: str, session: Session) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if not invoice:
        raise HTTPException(404, f"Invoice not found: {invoice_id}")
    return invoice


def _commit(invoice: Invoice, session: Session, failure: str) -> None:
    session.add(invoice)
    try:
        session.commit()
        session.refresh(invoice)
    except Exception:
        session.rollback()
        raise HTTPException(500, failure)


def _authorize(invoice: Invoice, user: User, action: InvoiceAction):
    try:
        return authorize(invoice.status, user.role, action)
    except PermissionError as exc:
        raise HTTPException(status.HTTP_403_FORBIDDEN, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc


@router.post("", status_code=201, response_model=InvoiceOut)
def create_invoice(
    body: InvoiceCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(requires_billing_staff),
):
    appointment = session.get(Appointment, body.appointment_id)
    if not appointment:
        raise HTTPException(404, f"Appointment not found: {body.appointment_id}")

    existing = session.exec(select(Invoice).where(Invoice.appointment_id == body.appointment_id)).first()
    if existing:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            f"An invoice already exists for appointment {body.appointment_id}",
        )

    items = [
        {
            "service_code": item.service_code.strip(),
            "description": item.description.strip(),
            "quantity": item.quantity,
            "unit_price": str(item.unit_price),
        }
        for item in body.line_items
    ]
    invoice = Invoice(
        id=f"INV{uuid.uuid4().hex[:12].upper()}",
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        status=INITIAL_STATES["invoice"],
        discount_percent=str(body.discount_percent),
        tax_rate=str(configured_tax_rate()),
        line_items_json=json.dumps(items),
        notes=body.notes.strip(),
        created_by=current_user.username,
        updated_by=current_user.username,
    )
    _commit(invoice, session, "Failed to create invoice")

    print(f"[CREATE] Invoice {invoice.id} for appointment {invoice.appointment_id}")
    return invoice_response(invoice)


@router.get("/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: str,
    session: Session = Depends(get_session),
    _current_user: User = Depends(requires_invoice_reader),
):
    return invoice_response(_get_invoice(invoice_id, session))


@router.patch("/{invoice_id}/status", response_model=InvoiceOut)
async def change_invoice_status(
    invoice_id: str,
    body: InvoiceStatusChange,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    invoice = _get_invoice(invoice_id, session)
    ensure_version(invoice, body.version, "Invoice")

    if body.action == InvoiceAction.RECORD_PAYMENT:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            f"Payments are recorded through POST /invoices/{invoice_id}/payments",
        )

    transition = _authorize(invoice, current_user, body.action)
    reason = (body.reason or "").strip()
    if transition.requires_reason and not reason:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"A reason is required to {body.action.value} an invoice")

    previous = invoice.status
    invoice.status = transition.target
    if body.action in (InvoiceAction.CANCEL, InvoiceAction.WRITE_OFF):
        invoice.cancel_reason = reason
    bump_version(invoice, current_user.username)
    _commit(invoice, session, "Failed to save transition")

    print(f"[TRANSITION] Invoice {invoice.id}: {previous.value} -> {invoice.status.value} (v{invoice.version})")
    return invoice_response(invoice)


@router.post("/{invoice_id}/payments", response_model=InvoiceOut)
async def record_payment(
    invoice_id: str,
    body: PaymentCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    invoice = _get_invoice(invoice_id, session)
    ensure_version(invoice, body.version, "Invoice")
    _authorize(invoice, current_user, InvoiceAction.RECORD_PAYMENT)

    payments = invoice.payments
    totals = compute_totals(invoice.line_items, invoice.discount_percent, invoice.tax_rate)
    due = amount_due(totals.net_amount, amount_paid(payments))
    amount = money(body.amount)
    if amount > due:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            f"Payment amount {amount} exceeds amount due {due}",
        )

    payments.append(
        {
            "amount": str(amount),
            "method": body.method.value,
            "reference": body.reference.strip() if body.reference else None,
            "notes": body.notes.strip() if body.notes else None,
            "recorded_by": current_user.username,
            "paid_at": utcnow().isoformat(),
        }
    )
    previous = invoice.status
    invoice.payments_json = json.dumps(payments)
    invoice.status = derive_payment_status(totals.net_amount, amount_paid(payments))
    bump_version(invoice, current_user.username)
    _commit(invoice, session, "Failed to record payment")

    print(
        f"[PAYMENT] Invoice {invoice.id}: {amount} via {body.method.value}, "
        f"{previous.value} -> {invoice.status.value} (v{invoice.version})"
    )
    return invoice_response(invoice)


@terms_router.get("/terms", response_model=BillingTerms)
def billing_terms(_current_user: User = Depends(get_current_user)):
    return BillingTerms(tax_rate=configured_tax_rate())
