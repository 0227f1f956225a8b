import asyncio
import json
import logging
from datetime import date, time
from decimal import Decimal

import httpx
import pytest

from lifecycle.api import ServiceClient
from lifecycle.errors import RELOAD_AND_RETRY, FailureKind
from lifecycle.executor import SUCCEEDED, TransitionExecutor
from lifecycle.reason_capture import CaptureState, ReasonCapture
from models import (
    Appointment,
    AppointmentAction,
    AppointmentStatus,
    InvoiceAction,
    InvoiceStatus,
    PaymentMethod,
    UserRole,
)
from schemas import AppointmentCreate, InvoiceCreate, LineItemIn, PaymentIn

R, D, N, A = UserRole.RECEPTIONIST, UserRole.DOCTOR, UserRole.NURSE, UserRole.ADMIN

LINE_ITEMS = [
    LineItemIn(service_code="CONS", description="Consultation", quantity=1, unit_price=Decimal("100.00")),
    LineItemIn(service_code="LAB", description="Blood panel", quantity=2, unit_price=Decimal("25.00")),
]


async def _book(service: ServiceClient) -> str:
    appointment = await service.create_appointment(
        AppointmentCreate(
            patient_id="PAT0001",
            doctor_id="DOC0001",
            appointment_date=date(2026, 11, 2),
            start_time=time(9, 30),
            reason="Persistent cough",
        )
    )
    return appointment.id


async def _issued_invoice(service: ServiceClient, executor: TransitionExecutor, role: UserRole = R) -> str:
    invoice = await service.create_invoice(InvoiceCreate(appointment_id=await _book(service), line_items=LINE_ITEMS))
    outcome = await executor.execute("invoice", invoice.id, InvoiceAction.ISSUE, role)
    assert outcome.ok, outcome.message
    return invoice.id


@pytest.mark.anyio
async def test_receptionist_cancels_confirmed_appointment(service_clients):
    service = await service_clients("receptionist")
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)

    confirmed = await executor.execute("appointment", appointment_id, AppointmentAction.CONFIRM, R)
    assert confirmed.kind == SUCCEEDED
    assert confirmed.entity.status == AppointmentStatus.CONFIRMED
    before = confirmed.entity.version

    outcome = await executor.execute(
        "appointment", appointment_id, AppointmentAction.CANCEL, R, reason="Patient requested reschedule"
    )

    assert outcome.ok
    assert outcome.entity.status == AppointmentStatus.CANCELLED
    assert outcome.entity.cancel_reason == "Patient requested reschedule"
    assert outcome.entity.version == before + 1
    assert executor.snapshot("appointment", appointment_id) == outcome.entity


@pytest.mark.anyio
async def test_terminal_appointment_offers_nothing_and_never_hits_network(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("admin", transport)
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)
    await executor.execute("appointment", appointment_id, AppointmentAction.CANCEL, A, reason="Duplicate booking")

    mark = len(transport.requests)
    for role in UserRole:
        assert executor.available_actions("appointment", appointment_id, role) == frozenset()
        for action in AppointmentAction:
            outcome = await executor.execute("appointment", appointment_id, action, role, reason="anything")
            assert outcome.kind == FailureKind.UNAUTHORIZED
    assert transport.since(mark) == []


@pytest.mark.anyio
async def test_blank_reason_never_reaches_network(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("admin", transport)
    executor = TransitionExecutor(service)
    invoice_id = await _issued_invoice(service, executor, A)
    snapshot = executor.snapshot("invoice", invoice_id)

    mark = len(transport.requests)
    for reason in (None, "", "   "):
        outcome = await executor.execute("invoice", invoice_id, InvoiceAction.WRITE_OFF, A, reason=reason)
        assert outcome.kind == FailureKind.VALIDATION_ERROR
        assert "reason" in outcome.field_errors
    assert transport.since(mark) == []
    assert executor.snapshot("invoice", invoice_id) is snapshot

    server_copy = await service.get_invoice(invoice_id)
    assert server_copy.status == InvoiceStatus.ISSUED
    assert server_copy.version == snapshot.version


@pytest.mark.anyio
async def test_invoice_paid_in_two_payments(service_clients):
    service = await service_clients("receptionist")
    executor = TransitionExecutor(service)
    invoice_id = await _issued_invoice(service, executor)
    assert executor.snapshot("invoice", invoice_id).net_amount == Decimal("150.00")

    first = await executor.execute(
        "invoice", invoice_id, InvoiceAction.RECORD_PAYMENT, R,
        payment=PaymentIn(amount=Decimal("100.00"), method=PaymentMethod.CARD),
    )
    assert first.ok, first.message
    assert first.entity.amount_due == Decimal("50.00")
    assert first.entity.status == InvoiceStatus.PARTIALLY_PAID

    second = await executor.execute(
        "invoice", invoice_id, InvoiceAction.RECORD_PAYMENT, R,
        payment={"amount": "50.00", "method": "CASH"},
    )
    assert second.ok, second.message
    assert second.entity.amount_due == Decimal("0.00")
    assert second.entity.status == InvoiceStatus.PAID
    assert executor.available_actions("invoice", invoice_id, A) == frozenset()


@pytest.mark.anyio
async def test_overpayment_is_a_rule_violation(service_clients):
    service = await service_clients("receptionist")
    executor = TransitionExecutor(service)
    invoice_id = await _issued_invoice(service, executor)
    snapshot = executor.snapshot("invoice", invoice_id)

    outcome = await executor.execute(
        "invoice", invoice_id, InvoiceAction.RECORD_PAYMENT, R,
        payment=PaymentIn(amount=Decimal("200.00"), method=PaymentMethod.CARD),
    )

    assert outcome.kind == FailureKind.RULE_VIOLATION
    assert outcome.message == "Payment amount 200.00 exceeds amount due 150.00"
    assert executor.snapshot("invoice", invoice_id) is snapshot


@pytest.mark.anyio
async def test_malformed_payment_is_rejected_locally(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("receptionist", transport)
    executor = TransitionExecutor(service)
    invoice_id = await _issued_invoice(service, executor)

    mark = len(transport.requests)
    missing = await executor.execute("invoice", invoice_id, InvoiceAction.RECORD_PAYMENT, R)
    negative = await executor.execute(
        "invoice", invoice_id, InvoiceAction.RECORD_PAYMENT, R, payment={"amount": "-5", "method": "CASH"}
    )

    assert missing.kind == FailureKind.VALIDATION_ERROR
    assert negative.kind == FailureKind.VALIDATION_ERROR
    assert "amount" in negative.field_errors
    assert transport.since(mark) == []


@pytest.mark.anyio
async def test_preview_matches_server_totals(service_clients):
    service = await service_clients("receptionist")
    executor = TransitionExecutor(service)

    preview = await executor.preview(LINE_ITEMS, Decimal("12.5"))
    created = await service.create_invoice(
        InvoiceCreate(appointment_id=await _book(service), line_items=LINE_ITEMS, discount_percent=Decimal("12.5"))
    )
    fetched = await service.get_invoice(created.id)

    assert preview.net_amount == created.net_amount == fetched.net_amount
    assert preview.discount_amount == fetched.discount_amount


@pytest.mark.anyio
async def test_stale_edit_from_second_session_conflicts(service_clients, db_session):
    session_a = TransitionExecutor(await service_clients("receptionist"))
    session_b = TransitionExecutor(await service_clients("receptionist"))
    appointment_id = await _book(session_a.client)

    appointment = db_session.get(Appointment, appointment_id)
    appointment.version = 3
    db_session.add(appointment)
    db_session.commit()

    assert (await session_a.reload("appointment", appointment_id)).version == 3
    assert (await session_b.reload("appointment", appointment_id)).version == 3

    cancelled = await session_a.execute(
        "appointment", appointment_id, AppointmentAction.CANCEL, R, reason="Patient called to cancel"
    )
    assert cancelled.ok
    assert cancelled.entity.version == 4

    conflict = await session_b.execute("appointment", appointment_id, AppointmentAction.CONFIRM, R)
    assert conflict.kind == FailureKind.CONFLICT
    assert conflict.message == RELOAD_AND_RETRY
    local = session_b.snapshot("appointment", appointment_id)
    assert local.status == AppointmentStatus.SCHEDULED
    assert local.version == 3
    assert session_b.available_actions("appointment", appointment_id, R) == frozenset()

    again = await session_b.execute("appointment", appointment_id, AppointmentAction.CONFIRM, R)
    assert again.kind == FailureKind.CONFLICT

    refreshed = await session_b.reload("appointment", appointment_id)
    assert refreshed.status == AppointmentStatus.CANCELLED
    assert refreshed.version == 4


@pytest.mark.anyio
async def test_same_entity_transitions_are_serialised(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("receptionist", transport)
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)
    await executor.reload("appointment", appointment_id)

    confirm, check_in = await asyncio.gather(
        executor.execute("appointment", appointment_id, AppointmentAction.CONFIRM, R),
        executor.execute("appointment", appointment_id, AppointmentAction.CHECK_IN, R),
    )

    assert confirm.ok and check_in.ok
    assert check_in.entity.status == AppointmentStatus.CHECKED_IN
    assert check_in.entity.version == 2


@pytest.mark.anyio
async def test_success_marks_dependent_views_stale(service_clients):
    service = await service_clients("receptionist")
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)
    executor.cache.put(("appointments", "today"), [appointment_id])

    await executor.execute("appointment", appointment_id, AppointmentAction.CONFIRM, R)

    assert executor.cache.get(("appointments", "today")).stale
    assert not executor.cache.get(("appointment", appointment_id)).stale


@pytest.mark.anyio
async def test_server_rejection_of_role_maps_to_unauthorized(service_clients):
    nurse = await service_clients("nurse")
    receptionist = await service_clients("receptionist")
    appointment_id = await _book(receptionist)
    executor = TransitionExecutor(nurse)

    # The caller claims ADMIN but the token belongs to a nurse.
    outcome = await executor.execute("appointment", appointment_id, AppointmentAction.CONFIRM, A)

    assert outcome.kind == FailureKind.UNAUTHORIZED
    assert "NURSE" in outcome.message
    assert executor.snapshot("appointment", appointment_id).status == AppointmentStatus.SCHEDULED


@pytest.mark.anyio
async def test_transition_leaves_other_cached_appointments_usable(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("receptionist", transport)
    executor = TransitionExecutor(service)
    first = await _book(service)
    second = await _book(service)
    await executor.reload("appointment", second)

    assert (await executor.execute("appointment", first, AppointmentAction.CONFIRM, R)).ok

    assert not executor.cache.get(("appointment", second)).stale
    assert AppointmentAction.CONFIRM in executor.available_actions("appointment", second, R)
    mark = len(transport.requests)
    outcome = await executor.execute("appointment", second, AppointmentAction.CONFIRM, R)
    assert outcome.ok, outcome.message
    assert outcome.entity.status == AppointmentStatus.CONFIRMED
    assert [method for method, _ in transport.since(mark)] == ["PATCH"]


@pytest.mark.anyio
async def test_local_rejection_is_logged_once(service_clients, caplog):
    service = await service_clients("admin")
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)
    await executor.execute("appointment", appointment_id, AppointmentAction.CANCEL, A, reason="Duplicate booking")

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="caduceus.lifecycle"):
        outcome = await executor.execute("appointment", appointment_id, AppointmentAction.CONFIRM, A)

    assert outcome.kind == FailureKind.UNAUTHORIZED
    warnings = [r for r in caplog.records if r.name == "caduceus.lifecycle" and r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "Unexpected state" in warnings[0].getMessage()


@pytest.mark.anyio
async def test_server_refusal_is_logged_once(service_clients, caplog):
    nurse = await service_clients("nurse")
    appointment_id = await _book(await service_clients("receptionist"))
    executor = TransitionExecutor(nurse)

    with caplog.at_level(logging.WARNING, logger="caduceus.lifecycle"):
        outcome = await executor.execute("appointment", appointment_id, AppointmentAction.CONFIRM, A)

    assert outcome.kind == FailureKind.UNAUTHORIZED
    warnings = [r for r in caplog.records if r.name == "caduceus.lifecycle" and r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "Service refused" in warnings[0].getMessage()


@pytest.mark.anyio
async def test_submit_composes_reason_capture(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("receptionist", transport)
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)
    await executor.reload("appointment", appointment_id)

    capture = ReasonCapture()
    assert await executor.begin(capture, "appointment", appointment_id, AppointmentAction.CANCEL) == CaptureState.PROMPTING_REASON

    mark = len(transport.requests)
    blank = await executor.submit(capture, "appointment", appointment_id, R)
    assert blank.kind == FailureKind.VALIDATION_ERROR
    assert capture.state == CaptureState.PROMPTING_REASON
    assert transport.since(mark) == []

    capture.update("  Clinic closed  ")
    done = await executor.submit(capture, "appointment", appointment_id, R)
    assert done.ok
    assert done.entity.cancel_reason == "Clinic closed"
    assert capture.state == CaptureState.IDLE
    assert capture.last_outcome == CaptureState.SUCCEEDED


@pytest.mark.anyio
async def test_begin_loads_unseen_entity_before_deciding_on_reason(service_clients, counting_transport):
    transport = counting_transport()
    service = await service_clients("receptionist", transport)
    executor = TransitionExecutor(service)
    appointment_id = await _book(service)
    assert executor.snapshot("appointment", appointment_id) is None

    capture = ReasonCapture()
    mark = len(transport.requests)
    assert await executor.begin(capture, "appointment", appointment_id, AppointmentAction.CANCEL) == CaptureState.PROMPTING_REASON
    assert transport.since(mark) == [("GET", f"/appointments/{appointment_id}")]
    assert executor.snapshot("appointment", appointment_id).status == AppointmentStatus.SCHEDULED

    capture.update("Patient moved away")
    done = await executor.submit(capture, "appointment", appointment_id, R)
    assert done.ok, done.message
    assert done.entity.status == AppointmentStatus.CANCELLED
    assert capture.state == CaptureState.IDLE


def _appointment_json(status="SCHEDULED", version=0):
    return {
        "id": "APTMOCK",
        "patient_id": "PAT1",
        "doctor_id": "DOC1",
        "appointment_date": "2026-11-02",
        "start_time": "09:30:00",
        "duration_minutes": 30,
        "type": "FOLLOW_UP",
        "status": status,
        "version": version,
    }


def _refuse_connection(request):
    raise httpx.ConnectError("Connection refused", request=request)


def _service_down(request):
    return httpx.Response(503, text="upstream down")


def _not_json(request):
    return httpx.Response(200, text="<html>not json</html>")


def _unknown_status(request):
    return httpx.Response(200, json=_appointment_json(status="TELEPORTED", version=1))


def _mock_executor(on_patch):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json=_appointment_json())
        return on_patch(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://mock")
    return TransitionExecutor(ServiceClient(http, token="mock-token")), http


@pytest.mark.anyio
@pytest.mark.parametrize(
    "on_patch",
    [_refuse_connection, _service_down, _not_json, _unknown_status],
    ids=["connect-error", "5xx", "not-json", "unknown-status"],
)
async def test_transport_problems_map_to_transport_failure(on_patch):
    executor, http = _mock_executor(on_patch)
    async with http:
        outcome = await executor.execute("appointment", "APTMOCK", AppointmentAction.CONFIRM, R)

    assert outcome.kind == FailureKind.TRANSPORT_FAILURE
    assert executor.snapshot("appointment", "APTMOCK").status == AppointmentStatus.SCHEDULED


@pytest.mark.anyio
async def test_field_errors_from_service_are_preserved():
    def reject(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"action": "CONFIRM", "version": 0}
        return httpx.Response(
            422,
            json={"detail": [{"loc": ["body", "start_time"], "msg": "Clinic is closed at this hour", "type": "value_error"}]},
        )

    executor, http = _mock_executor(reject)
    async with http:
        outcome = await executor.execute("appointment", "APTMOCK", AppointmentAction.CONFIRM, R)

    assert outcome.kind == FailureKind.RULE_VIOLATION
    assert outcome.field_errors == {"start_time": "Clinic is closed at this hour"}


def test_unknown_entity_kind_is_rejected():
    executor = TransitionExecutor(ServiceClient(httpx.AsyncClient(base_url="http://unused")))
    with pytest.raises(ValueError):
        executor.available_actions("prescription", "X", A)
