"""Runs one named action against one entity and reports a typed outcome.

The executor composes the pieces the rest of ``lifecycle`` provides: the
snapshot cache for the version token and per-entity serialisation, the
authorizer for the advisory pre-check, and the service client for the
authoritative answer. Failures never escape as exceptions; every call ends
in a ``TransitionOutcome``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ValidationError

from lifecycle.api import ServiceClient
from lifecycle.cache import CacheKey, SnapshotCache
from lifecycle.errors import (
    RELOAD_AND_RETRY,
    ActionNotPermitted,
    FailureKind,
    InvalidInput,
    TransitionError,
    VersionConflict,
)
from lifecycle.reason_capture import REASON_REQUIRED, CaptureState, ReasonCapture
from models import InvoiceAction, UserRole
from schemas import PaymentIn
from services.access import list_available_actions, requires_reason
from services.billing import InvoiceTotals, preview_invoice

logger = logging.getLogger("caduceus.lifecycle")

SUCCEEDED = "SUCCEEDED"
ENTITY_KINDS = ("appointment", "invoice")
TERMS_KEY: CacheKey = ("billing_terms",)


@dataclass(frozen=True)
class TransitionOutcome:
    kind: Union[str, FailureKind]
    entity: Optional[BaseModel] = None
    message: str = ""
    field_errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.kind == SUCCEEDED


def _entity_key(kind: str, entity_id: str) -> CacheKey:
    if kind not in ENTITY_KINDS:
        raise ValueError(f"Unknown entity kind: {kind}")
    return (kind, entity_id)


def _payment_errors(exc: ValidationError) -> dict[str, str]:
    return {".".join(str(part) for part in error["loc"]) or "payment": error["msg"] for error in exc.errors()}


class TransitionExecutor:
    def __init__(self, client: ServiceClient, cache: SnapshotCache | None = None):
        self.client = client
        self.cache = cache or SnapshotCache()

    async def _load(self, kind: str, entity_id: str) -> BaseModel:
        if kind == "appointment":
            return await self.client.get_appointment(entity_id)
        return await self.client.get_invoice(entity_id)

    async def _send(
        self,
        kind: str,
        entity_id: str,
        action: Enum,
        version: int,
        reason: Optional[str],
        payment: Optional[PaymentIn],
    ) -> BaseModel:
        if kind == "appointment":
            return await self.client.change_appointment_status(entity_id, action, version, reason)
        if action == InvoiceAction.RECORD_PAYMENT:
            return await self.client.record_payment(entity_id, payment, version)
        return await self.client.change_invoice_status(entity_id, action, version, reason)

    def snapshot(self, kind: str, entity_id: str) -> Optional[BaseModel]:
        entry = self.cache.get(_entity_key(kind, entity_id))
        return entry.value if entry else None

    def available_actions(self, kind: str, entity_id: str, role: UserRole) -> frozenset[Enum]:
        """Actions to offer ``role``, computed from the current snapshot.

        A missing or stale snapshot offers nothing until it is reloaded.
        """
        entry = self.cache.get(_entity_key(kind, entity_id))
        if entry is None or entry.stale:
            return frozenset()
        return list_available_actions(entry.value.status, role)

    async def reload(self, kind: str, entity_id: str) -> BaseModel:
        return await self.cache.fetch(_entity_key(kind, entity_id), lambda: self._load(kind, entity_id))

    async def billing_terms(self):
        entry = self.cache.get(TERMS_KEY)
        if entry is not None and not entry.stale:
            return entry.value
        return await self.cache.fetch(TERMS_KEY, self.client.billing_terms)

    async def preview(self, line_items: Any, discount_percent: Any = 0) -> InvoiceTotals:
        """Totals for an invoice being composed, using the service's tax rate."""
        terms = await self.billing_terms()
        return preview_invoice(line_items, discount_percent, terms.tax_rate)

    async def execute(
        self,
        kind: str,
        entity_id: str,
        action: Enum,
        role: UserRole,
        reason: Optional[str] = None,
        payment: Union[PaymentIn, Mapping[str, Any], None] = None,
    ) -> TransitionOutcome:
        key = _entity_key(kind, entity_id)
        async with self.cache.lock(key):
            try:
                updated = await self._execute_locked(key, action, role, reason, payment)
            except TransitionError as exc:
                return self._failure(key, action, exc)

        return TransitionOutcome(kind=SUCCEEDED, entity=updated)

    async def _execute_locked(
        self,
        key: CacheKey,
        action: Enum,
        role: UserRole,
        reason: Optional[str],
        payment: Union[PaymentIn, Mapping[str, Any], None],
    ) -> BaseModel:
        kind, entity_id = key
        entry = self.cache.get(key)
        if entry is None:
            snapshot = await self._load(kind, entity_id)
            self.cache.put(key, snapshot)
        elif entry.stale:
            raise VersionConflict(RELOAD_AND_RETRY)
        else:
            snapshot = entry.value

        if action not in list_available_actions(snapshot.status, role):
            logger.warning(
                "Unexpected state: %s offered %s on %s %s in status %s",
                role.value, getattr(action, "value", action), kind, entity_id, snapshot.status.value,
            )
            raise ActionNotPermitted(
                f"{getattr(action, 'value', action)} is not available to {role.value} "
                f"on a {snapshot.status.value} {kind}"
            )

        trimmed = (reason or "").strip() or None
        if requires_reason(snapshot.status, action) and trimmed is None:
            raise InvalidInput(f"A reason is required to {action.value} this {kind}", {"reason": REASON_REQUIRED})

        parsed_payment = None
        if action == InvoiceAction.RECORD_PAYMENT:
            if payment is None:
                raise InvalidInput("A payment amount and method are required", {"payment": "Required"})
            try:
                parsed_payment = PaymentIn.model_validate(payment)
            except ValidationError as exc:
                raise InvalidInput("The payment is not valid", _payment_errors(exc)) from exc

        try:
            updated = await self._send(kind, entity_id, action, snapshot.version, trimmed, parsed_payment)
        except VersionConflict:
            self.cache.mark_stale(key)
            raise

        self.cache.put(key, updated)
        self.cache.invalidate(kind, keep=key)
        return updated

    def _failure(self, key: CacheKey, action: Enum, exc: TransitionError) -> TransitionOutcome:
        if exc.kind == FailureKind.TRANSPORT_FAILURE:
            logger.error("Action %s on %s failed in transport: %s", getattr(action, "value", action), key, exc.message)
        return TransitionOutcome(kind=exc.kind, message=exc.message, field_errors=exc.field_errors)

    async def begin(self, capture: ReasonCapture, kind: str, entity_id: str, action: Enum) -> CaptureState:
        """Start ``capture`` for ``action``, prompting for a reason when the entity's edge needs one.

        A snapshot that was never loaded is fetched first; transport or
        permission failures of that fetch propagate as ``TransitionError``.
        """
        entry = self.cache.get(_entity_key(kind, entity_id))
        if entry is None:
            snapshot = await self.reload(kind, entity_id)
        else:
            snapshot = entry.value
        return capture.begin(action, requires_reason(snapshot.status, action))

    async def submit(
        self,
        capture: ReasonCapture,
        kind: str,
        entity_id: str,
        role: UserRole,
        payment: Union[PaymentIn, Mapping[str, Any], None] = None,
    ) -> TransitionOutcome:
        if capture.state == CaptureState.PROMPTING_REASON:
            if not capture.submit():
                return TransitionOutcome(
                    kind=FailureKind.VALIDATION_ERROR,
                    message=REASON_REQUIRED,
                    field_errors=dict(capture.field_errors),
                )
        elif capture.state != CaptureState.SUBMITTING:
            raise ValueError(f"Nothing to submit while {capture.state.value}")

        outcome = await self.execute(kind, entity_id, capture.action, role, capture.trimmed_reason, payment)
        if outcome.ok:
            capture.succeed()
        else:
            capture.fail(outcome.message, outcome.field_errors)
        return outcome
