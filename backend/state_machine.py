from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from models import (
    AppointmentAction,
    AppointmentStatus,
    InvoiceAction,
    InvoiceStatus,
    UserRole,
)

R = UserRole.RECEPTIONIST
D = UserRole.DOCTOR
N = UserRole.NURSE
A = UserRole.ADMIN


@dataclass(frozen=True)
class Transition:
    """One edge of a status graph.

    ``target`` is None when the destination is derived by the service from
    business data (invoice payments) instead of being chosen by the actor.
    """

    action: Enum
    roles: frozenset[UserRole]
    requires_reason: bool = False
    target: Optional[Enum] = None


@dataclass(frozen=True)
class StatusGraph:
    entity: str
    edges: dict[Enum, dict[Enum, Transition]]
    terminal: frozenset[Enum]
    cancel_action: Optional[Enum] = None
    cancel_target: Optional[Enum] = None
    admin_cancel_fallback: bool = False


def _edge(action: Enum, roles: set[UserRole], target: Enum | None, requires_reason: bool = False) -> Transition:
    return Transition(action=action, roles=frozenset(roles), requires_reason=requires_reason, target=target)


APPOINTMENT_GRAPH = StatusGraph(
    entity="appointment",
    edges={
        AppointmentStatus.SCHEDULED: {
            AppointmentAction.CONFIRM: _edge(AppointmentAction.CONFIRM, {R, A}, AppointmentStatus.CONFIRMED),
            AppointmentAction.CANCEL: _edge(AppointmentAction.CANCEL, {R, A, D}, AppointmentStatus.CANCELLED, True),
        },
        AppointmentStatus.CONFIRMED: {
            AppointmentAction.CHECK_IN: _edge(AppointmentAction.CHECK_IN, {R, N, A}, AppointmentStatus.CHECKED_IN),
            AppointmentAction.NO_SHOW: _edge(AppointmentAction.NO_SHOW, {R, A}, AppointmentStatus.NO_SHOW),
            AppointmentAction.CANCEL: _edge(AppointmentAction.CANCEL, {R, A, D}, AppointmentStatus.CANCELLED, True),
        },
        AppointmentStatus.CHECKED_IN: {
            AppointmentAction.START: _edge(AppointmentAction.START, {D, A}, AppointmentStatus.IN_PROGRESS),
            AppointmentAction.CANCEL: _edge(AppointmentAction.CANCEL, {A}, AppointmentStatus.CANCELLED, True),
        },
        AppointmentStatus.IN_PROGRESS: {
            AppointmentAction.COMPLETE: _edge(AppointmentAction.COMPLETE, {D, A}, AppointmentStatus.COMPLETED),
            AppointmentAction.CANCEL: _edge(AppointmentAction.CANCEL, {D, A}, AppointmentStatus.CANCELLED, True),
        },
    },
    terminal=frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    cancel_action=AppointmentAction.CANCEL,
    cancel_target=AppointmentStatus.CANCELLED,
    admin_cancel_fallback=True,
)

_INVOICE_CANCEL = _edge(InvoiceAction.CANCEL, {A}, InvoiceStatus.CANCELLED, True)
_INVOICE_WRITE_OFF = _edge(InvoiceAction.WRITE_OFF, {A}, InvoiceStatus.WRITTEN_OFF, True)
_INVOICE_PAYMENT = _edge(InvoiceAction.RECORD_PAYMENT, {R, A}, None)

INVOICE_GRAPH = StatusGraph(
    entity="invoice",
    edges={
        InvoiceStatus.DRAFT: {
            InvoiceAction.ISSUE: _edge(InvoiceAction.ISSUE, {R, A}, InvoiceStatus.ISSUED),
            InvoiceAction.CANCEL: _INVOICE_CANCEL,
        },
        InvoiceStatus.ISSUED: {
            InvoiceAction.CANCEL: _INVOICE_CANCEL,
            InvoiceAction.WRITE_OFF: _INVOICE_WRITE_OFF,
            InvoiceAction.RECORD_PAYMENT: _INVOICE_PAYMENT,
        },
        InvoiceStatus.PARTIALLY_PAID: {
            InvoiceAction.WRITE_OFF: _INVOICE_WRITE_OFF,
            InvoiceAction.RECORD_PAYMENT: _INVOICE_PAYMENT,
        },
    },
    terminal=frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED, InvoiceStatus.WRITTEN_OFF}),
    cancel_action=InvoiceAction.CANCEL,
    cancel_target=InvoiceStatus.CANCELLED,
)

INITIAL_STATES: dict[str, Enum] = {
    APPOINTMENT_GRAPH.entity: AppointmentStatus.SCHEDULED,
    INVOICE_GRAPH.entity: InvoiceStatus.DRAFT,
}

GRAPHS: dict[str, StatusGraph] = {
    APPOINTMENT_GRAPH.entity: APPOINTMENT_GRAPH,
    INVOICE_GRAPH.entity: INVOICE_GRAPH,
}


def graph_for(value: Enum) -> StatusGraph:
    """Return the graph a status or action enum member belongs to."""
    if isinstance(value, (AppointmentStatus, AppointmentAction)):
        return APPOINTMENT_GRAPH
    if isinstance(value, (InvoiceStatus, InvoiceAction)):
        return INVOICE_GRAPH
    raise ValueError(f"No status graph for {value!r}")


def is_terminal(graph: StatusGraph, status: Enum) -> bool:
    return status in graph.terminal


def transitions_from(graph: StatusGraph, status: Enum) -> dict[Enum, Transition]:
    """Explicit edges leaving ``status`` plus the admin cancel fallback, if the graph has one."""
    if is_terminal(graph, status):
        return {}

    edges = dict(graph.edges.get(status, {}))
    if graph.admin_cancel_fallback and graph.cancel_action is not None:
        explicit = edges.get(graph.cancel_action)
        if explicit is None:
            edges[graph.cancel_action] = _edge(
                graph.cancel_action, {UserRole.ADMIN}, graph.cancel_target, True
            )
        elif UserRole.ADMIN not in explicit.roles:
            edges[graph.cancel_action] = _edge(
                graph.cancel_action,
                set(explicit.roles) | {UserRole.ADMIN},
                explicit.target,
                True,
            )
    return edges


def validate_transition(graph: StatusGraph, current_state: Enum, action: Enum) -> Transition:
    """Return the edge for ``action`` from ``current_state``, raise ValueError otherwise."""
    if current_state not in graph.edges and current_state not in graph.terminal:
        raise ValueError(f"Unknown {graph.entity} status: {current_state}")

    if is_terminal(graph, current_state):
        raise ValueError(
            f"{graph.entity.capitalize()} is {current_state.value}; no further actions are permitted"
        )

    allowed = transitions_from(graph, current_state)
    transition = allowed.get(action)
    if transition is None:
        raise ValueError(
            f"Cannot perform action {action.value} on {graph.entity} with status {current_state.value}. "
            f"Allowed: {sorted(a.value for a in allowed)}"
        )
    return transition
