import json
import os
import uuid
from datetime import date, time, timedelta

from sqlmodel import Session, select

from database import engine, create_db
from models import Appointment, AppointmentType, Invoice, User, UserRole
from services.auth import hash_password
from services.billing import configured_tax_rate
from state_machine import INITIAL_STATES

DEMO_USERS = [
    {
        "name": "Reception Desk Asha",
        "username": "reception",
        "password": "reception123",
        "role": UserRole.RECEPTIONIST,
    },
    {
        "name": "Dr. Priya",
        "username": "doctor",
        "password": "doctor123",
        "role": UserRole.DOCTOR,
    },
    {
        "name": "Nurse Riya",
        "username": "nurse",
        "password": "nurse123",
        "role": UserRole.NURSE,
    },
    {
        "name": "Admin Sahana",
        "username": "admin",
        "password": "admin123",
        "role": UserRole.ADMIN,
    },
]

DEMO_LINE_ITEMS = [
    {"service_code": "CONS", "description": "General consultation", "quantity": 1, "unit_price": "100.00"},
    {"service_code": "LAB-CBC", "description": "Complete blood count", "quantity": 2, "unit_price": "25.00"},
]


def run_seed(seed_demo: bool = False):
    create_db()

    with Session(engine) as session:
        if session.exec(select(User)).first():
            print("Database already seeded. Skipping.")
            return

        for spec in DEMO_USERS:
            user = User(
                name=spec["name"],
                username=spec["username"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            print(f"Created user: {user.username} ({user.role.value})")

        if seed_demo:
            appointment = Appointment(
                id=f"APT{uuid.uuid4().hex[:12].upper()}",
                patient_id="PAT0001",
                doctor_id="DOC0001",
                appointment_date=date.today() + timedelta(days=1),
                start_time=time(9, 30),
                duration_minutes=30,
                type=AppointmentType.GENERAL_CONSULTATION,
                reason="Follow-up on persistent cough",
                status=INITIAL_STATES["appointment"],
                created_by="reception",
                updated_by="reception",
            )
            invoice = Invoice(
                id=f"INV{uuid.uuid4().hex[:12].upper()}",
                appointment_id=appointment.id,
                patient_id=appointment.patient_id,
                status=INITIAL_STATES["invoice"],
                tax_rate=str(configured_tax_rate()),
                line_items_json=json.dumps(DEMO_LINE_ITEMS),
                created_by="reception",
                updated_by="reception",
            )
            session.add(appointment)
            session.add(invoice)
            session.commit()
            print(f"  Created appointment: {appointment.id} [{appointment.status.value}]")
            print(f"  Created invoice: {invoice.id} [{invoice.status.value}]")
        else:
            print("No demo appointment/invoice seeded (clean slate).")

        print("Demo credentials:")
        for spec in DEMO_USERS:
            print(f"  {spec['username']} / {spec['password']}")
        print("Seed complete.")


if __name__ == "__main__":
    run_seed(seed_demo=os.getenv("CADUCEUS_SEED_DEMO", "0") == "1")
