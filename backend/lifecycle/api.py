"""HTTP client for the remote hospital service.

Every response class is mapped onto the transition error taxonomy here, so
callers never inspect status codes: 409 is a version conflict, 401/403 a
permission failure, any other 4xx a domain rule the service enforced, and
network errors, 5xx or unreadable bodies a transport failure.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from lifecycle.errors import (
    RELOAD_AND_RETRY,
    ActionNotPermitted,
    RuleViolation,
    TransportFailure,
    VersionConflict,
)
from schemas import (
    AppointmentCreate,
    AppointmentOut,
    BillingTerms,
    InvoiceCreate,
    InvoiceOut,
    PaymentIn,
)

API_URL = os.getenv("CADUCEUS_API_URL", "http://127.0.0.1:8000")
API_TIMEOUT_SECONDS = float(os.getenv("CADUCEUS_API_TIMEOUT", "10.0"))

logger = logging.getLogger("caduceus.lifecycle")

ModelT = TypeVar("ModelT", bound=BaseModel)


def _error_details(response: httpx.Response) -> tuple[str, dict[str, str]]:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, {}

    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, str):
        return detail, {}
    if isinstance(detail, list):
        field_errors: dict[str, str] = {}
        for error in detail:
            if not isinstance(error, dict):
                continue
            loc = [str(part) for part in error.get("loc", []) if part != "body"]
            field_errors[".".join(loc) or "body"] = str(error.get("msg", "Invalid value"))
        return "Validation failed", field_errors
    return response.reason_phrase, {}


class ServiceClient:
    def __init__(self, http: httpx.AsyncClient | None = None, token: str | None = None):
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(base_url=API_URL, timeout=API_TIMEOUT_SECONDS)
        self.token = token

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    async def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            response = await self.http.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Request %s %s failed: %s", method, path, exc)
            raise TransportFailure("The service could not be reached. Try again.") from exc

        if response.status_code >= 500:
            logger.warning("Request %s %s answered %s", method, path, response.status_code)
            raise TransportFailure("The service is unavailable. Try again.")

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                raise TransportFailure("The service returned an unreadable response.") from exc

        message, field_errors = _error_details(response)
        if response.status_code == httpx.codes.CONFLICT:
            logger.info("Version conflict on %s %s: %s", method, path, message)
            raise VersionConflict(RELOAD_AND_RETRY)
        if response.status_code in (httpx.codes.UNAUTHORIZED, httpx.codes.FORBIDDEN):
            logger.warning("Service refused %s %s with %s: %s", method, path, response.status_code, message)
            raise ActionNotPermitted(message)
        raise RuleViolation(message, field_errors)

    @staticmethod
    def _parse(model: type[ModelT], payload: Any) -> ModelT:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            logger.error("Rejected %s from service: %s", model.__name__, exc)
            raise TransportFailure(f"The service returned an unrecognised {model.__name__} record.") from exc

    async def login(self, username: str, password: str) -> dict:
        payload = await self._request("POST", "/auth/login", {"username": username, "password": password})
        self.token = payload["access_token"]
        return payload["user"]

    async def billing_terms(self) -> BillingTerms:
        return self._parse(BillingTerms, await self._request("GET", "/billing/terms"))

    async def create_appointment(self, body: AppointmentCreate) -> AppointmentOut:
        payload = await self._request("POST", "/appointments", body.model_dump(mode="json"))
        return self._parse(AppointmentOut, payload)

    async def get_appointment(self, appointment_id: str) -> AppointmentOut:
        return self._parse(AppointmentOut, await self._request("GET", f"/appointments/{appointment_id}"))

    async def change_appointment_status(
        self,
        appointment_id: str,
        action: Enum,
        version: int,
        reason: str | None = None,
    ) -> AppointmentOut:
        body: dict[str, Any] = {"action": action.value, "version": version}
        if reason:
            body["reason"] = reason
        payload = await self._request("PATCH", f"/appointments/{appointment_id}/status", body)
        return self._parse(AppointmentOut, payload)

    async def create_invoice(self, body: InvoiceCreate) -> InvoiceOut:
        payload = await self._request("POST", "/invoices", body.model_dump(mode="json"))
        return self._parse(InvoiceOut, payload)

    async def get_invoice(self, invoice_id: str) -> InvoiceOut:
        return self._parse(InvoiceOut, await self._request("GET", f"/invoices/{invoice_id}"))

    async def change_invoice_status(
        self,
        invoice_id: str,
        action: Enum,
        version: int,
        reason: str | None = None,
    ) -> InvoiceOut:
        body: dict[str, Any] = {"action": action.value, "version": version}
        if reason:
            body["reason"] = reason
        payload = await self._request("PATCH", f"/invoices/{invoice_id}/status", body)
        return self._parse(InvoiceOut, payload)

    async def record_payment(self, invoice_id: str, payment: PaymentIn, version: int) -> InvoiceOut:
        body = payment.model_dump(mode="json", exclude_none=True)
        body["version"] = version
        payload = await self._request("POST", f"/invoices/{invoice_id}/payments", body)
        return self._parse(InvoiceOut, payload)
