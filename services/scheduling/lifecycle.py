"""Appointment state machine.

Every status change goes through ``transition``; the table below is the only
place that knows which action is legal from which status and for whom.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, NamedTuple

from core.errors import IllegalTransition, PermissionDenied
from models.appointment import Appointment, AppointmentStatus, TERMINAL_STATUSES
from models.directory import UserRole


class Action(str, Enum):
    confirm_payment = "confirm-payment"
    pay_later = "pay-later"
    check_in = "check-in"
    start = "start"
    complete = "complete"
    no_show = "no-show"
    cancel = "cancel"
    reschedule = "reschedule"


@dataclass(frozen=True)
class Actor:
    id: str
    role: UserRole


class Rule(NamedTuple):
    sources: FrozenSet[AppointmentStatus]
    target: AppointmentStatus
    roles: FrozenSet[UserRole]


S = AppointmentStatus
R = UserRole

TRANSITIONS: Dict[Action, Rule] = {
    Action.confirm_payment: Rule(
        frozenset({S.pending_payment}), S.scheduled, frozenset({R.patient, R.staff, R.admin, R.system})
    ),
    Action.pay_later: Rule(
        frozenset({S.pending_payment}), S.scheduled, frozenset({R.patient, R.staff, R.admin, R.system})
    ),
    Action.check_in: Rule(frozenset({S.scheduled}), S.confirmed, frozenset({R.doctor, R.staff, R.admin})),
    Action.start: Rule(frozenset({S.confirmed}), S.in_progress, frozenset({R.doctor, R.staff, R.admin})),
    Action.complete: Rule(frozenset({S.in_progress}), S.completed, frozenset({R.doctor, R.staff, R.admin})),
    Action.no_show: Rule(frozenset({S.confirmed}), S.no_show, frozenset({R.doctor, R.staff, R.admin})),
    Action.cancel: Rule(
        frozenset({S.pending_payment, S.scheduled, S.confirmed}), S.cancelled, frozenset({R.patient, R.staff, R.admin})
    ),
    # Re-enters scheduled once the new window is claimed; see settle()
    Action.reschedule: Rule(frozenset({S.scheduled}), S.rescheduled, frozenset({R.patient, R.staff, R.admin})),
}


def settle(status: AppointmentStatus) -> AppointmentStatus:
    if status == AppointmentStatus.rescheduled:
        return AppointmentStatus.scheduled
    return status


def transition(current: AppointmentStatus, action: Action, actor: Actor) -> AppointmentStatus:
    rule = TRANSITIONS[action]
    source = settle(current)
    if current in TERMINAL_STATUSES:
        raise IllegalTransition(
            f"Appointment is {current.value}; no further changes are allowed",
            details={"status": current.value, "action": action.value},
        )
    if source not in rule.sources:
        raise IllegalTransition(
            f"Cannot {action.value} an appointment that is {current.value}",
            details={"status": current.value, "action": action.value},
        )
    ensure_role(action, actor)
    return rule.target


def ensure_role(action: Action, actor: Actor) -> None:
    if actor.role not in TRANSITIONS[action].roles:
        raise PermissionDenied(
            f"Role '{actor.role.value}' may not {action.value} appointments",
            details={"role": actor.role.value, "action": action.value},
        )


def ensure_party(appointment: Appointment, actor: Actor) -> None:
    """Patients act on their own appointments, doctors on the ones they hold."""
    if actor.role == UserRole.patient and appointment.patient_id != actor.id:
        raise PermissionDenied("Patients may only act on their own appointments")
    if actor.role == UserRole.doctor and appointment.doctor_id != actor.id:
        raise PermissionDenied("Doctors may only act on their own appointments")


def allowed_actions(status: AppointmentStatus, role: UserRole) -> List[Action]:
    if status in TERMINAL_STATUSES:
        return []
    source = settle(status)
    return [action for action, rule in TRANSITIONS.items() if source in rule.sources and role in rule.roles]
