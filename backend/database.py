import logging
import os
from pathlib import Path

from sqlalchemy import inspect
from sqlmodel import SQLModel, Session, create_engine

DB_FILE = Path(os.getenv("CADUCEUS_DB_FILE", str(Path(__file__).resolve().parent / "caduceus.db")))
DATABASE_URL = f"sqlite:///{DB_FILE}"

engine = create_engine(DATABASE_URL, echo=False)
logger = logging.getLogger("caduceus")


REQUIRED_COLUMNS = {
    "user": {"id", "username", "name", "password_hash", "role", "is_active", "created_at"},
    "appointment": {
        "id",
        "patient_id",
        "doctor_id",
        "appointment_date",
        "start_time",
        "duration_minutes",
        "type",
        "reason",
        "cancel_reason",
        "status",
        "version",
    },
    "invoice": {
        "id",
        "appointment_id",
        "patient_id",
        "status",
        "discount_percent",
        "tax_rate",
        "line_items_json",
        "payments_json",
        "cancel_reason",
        "version",
    },
}


def _schema_needs_rebuild() -> bool:
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_cols in REQUIRED_COLUMNS.items():
        if table_name not in existing_tables:
            continue
        existing_cols = {col["name"] for col in inspector.get_columns(table_name)}
        if not required_cols.issubset(existing_cols):
            return True
    return False


def create_db():
    if _schema_needs_rebuild():
        logger.warning("Schema mismatch detected. Rebuilding local SQLite schema.")
        SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
