from __future__ import annotations

from enum import Enum

from models import UserRole
from state_machine import Transition, graph_for, transitions_from, validate_transition


def list_available_actions(status: Enum, role: UserRole) -> frozenset[Enum]:
    """Actions ``role`` may submit against an entity currently in ``status``.

    Pure lookup into the status graph plus the admin cancel fallback. The
    service repeats the same check on every request; this answer only decides
    what to offer.
    """
    graph = graph_for(status)
    return frozenset(
        action
        for action, transition in transitions_from(graph, status).items()
        if role in transition.roles
    )


def roles_allowed_for_action(status: Enum, action: Enum) -> set[UserRole]:
    transition = transitions_from(graph_for(status), status).get(action)
    if transition is None:
        return set()
    return set(transition.roles)


def requires_reason(status: Enum, action: Enum) -> bool:
    transition = transitions_from(graph_for(status), status).get(action)
    return bool(transition and transition.requires_reason)


def authorize(status: Enum, role: UserRole, action: Enum) -> Transition:
    """Return the edge ``role`` may take.

    Raises ValueError when the action does not leave ``status`` at all and
    PermissionError when it does but not for ``role``.
    """
    transition = validate_transition(graph_for(status), status, action)
    if role not in transition.roles:
        raise PermissionError(
            f"Role {role.value} cannot perform action {action.value} on a {status.value} {graph_for(status).entity}"
        )
    return transition
