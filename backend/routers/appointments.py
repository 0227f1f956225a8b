import uuid

from fastapi import APIRouter, Depends, HTTPException, status
from sqlmodel import Session

from database import get_session
from models import Appointment, AppointmentAction, User, UserRole
from schemas import AppointmentCreate, AppointmentOut, AppointmentStatusChange
from services.access import authorize
from services.auth import get_current_user, require_roles
from services.versioning import bump_version, ensure_version
from state_machine import INITIAL_STATES

router = APIRouter(prefix="/appointments", tags=["appointments"])


def appointment_response(appointment: Appointment) -> AppointmentOut:
    return AppointmentOut.model_validate(appointment, from_attributes=True)


def _get_appointment(appointment_id: str, session: Session) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if not appointment:
        raise HTTPException(404, f"Appointment not found: {appointment_id}")
    return appointment


@router.post("", status_code=201, response_model=AppointmentOut)
def book_appointment(
    body: AppointmentCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_roles(UserRole.RECEPTIONIST, UserRole.ADMIN)),
):
    appointment = Appointment(
        id=f"APT{uuid.uuid4().hex[:12].upper()}",
        patient_id=body.patient_id.strip(),
        doctor_id=body.doctor_id.strip(),
        appointment_date=body.appointment_date,
        start_time=body.start_time,
        duration_minutes=body.duration_minutes,
        type=body.type,
        reason=body.reason.strip(),
        notes=body.notes.strip(),
        status=INITIAL_STATES["appointment"],
        created_by=current_user.username,
        updated_by=current_user.username,
    )
    try:
        session.add(appointment)
        session.commit()
        session.refresh(appointment)
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to book appointment")

    print(f"[CREATE] Appointment {appointment.id} for patient {appointment.patient_id}")
    return appointment_response(appointment)


@router.get("/{appointment_id}", response_model=AppointmentOut)
def get_appointment(
    appointment_id: str,
    session: Session = Depends(get_session),
    _current_user: User = Depends(get_current_user),
):
    return appointment_response(_get_appointment(appointment_id, session))


@router.patch("/{appointment_id}/status", response_model=AppointmentOut)
async def change_status(
    appointment_id: str,
    body: AppointmentStatusChange,
    session: Session = Depends(get_session),
    current_user: User = Depends(get_current_user),
):
    appointment = _get_appointment(appointment_id, session)
    ensure_version(appointment, body.version, "Appointment")

    try:
        transition = authorize(appointment.status, current_user.role, body.action)
    except PermissionError as exc:
        raise HTTPException(status.HTTP_403_FORBIDDEN, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc)) from exc

    reason = (body.reason or "").strip()
    if transition.requires_reason and not reason:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, f"A reason is required to {body.action.value} an appointment")

    previous = appointment.status
    appointment.status = transition.target
    if body.action == AppointmentAction.CANCEL:
        appointment.cancel_reason = reason
    bump_version(appointment, current_user.username)
    session.add(appointment)

    try:
        session.commit()
        session.refresh(appointment)
    except Exception:
        session.rollback()
        raise HTTPException(500, "Failed to save transition")

    print(
        f"[TRANSITION] Appointment {appointment.id}: {previous.value} -> {appointment.status.value} "
        f"by {current_user.role.value} (v{appointment.version})"
    )
    return appointment_response(appointment)
