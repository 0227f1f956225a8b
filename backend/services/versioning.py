from __future__ import annotations

from fastapi import HTTPException, status

from models import Appointment, Invoice, utcnow


def ensure_version(entity: Appointment | Invoice, supplied: int, label: str) -> None:
    if entity.version != supplied:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"{label} version mismatch. Expected {entity.version} but got {supplied}. "
                "Reload and try again."
            ),
        )


def bump_version(entity: Appointment | Invoice, actor: str) -> None:
    entity.version += 1
    entity.updated_by = actor
    entity.updated_at = utcnow()
