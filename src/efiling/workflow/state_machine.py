"""Instruction statuses and the role-gated transition table.

Pure functions only; persistence, locking and records live in
``efiling.workflow.service``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, List, Optional

from efiling.errors import InvalidInput, InvalidTransition


class InstructionStatus(str, Enum):
    SUBMITTED = "Submitted"
    LOGGED = "Logged"
    PC_ASSIGNED = "PCAssigned"
    ASSIGNED = "Assigned"
    DRAFT_SUBMITTED = "DraftSubmitted"
    SIGNED_OFF = "SignedOff"


class Role(str, Enum):
    REGISTRY_OFFICER = "RegistryOfficer"
    COUNSEL = "Counsel"
    DRAFTER = "Drafter"
    SENIOR_COUNSEL = "SeniorCounsel"
    ADMIN = "Admin"


class Action(str, Enum):
    LOG = "log"
    ASSIGN_COUNSEL = "assign_counsel"
    REASSIGN_COUNSEL = "reassign_counsel"
    ASSIGN_DRAFTER = "assign_drafter"
    SAVE_DRAFT = "save_draft"
    SUBMIT_DRAFT = "submit_draft"
    REQUEST_REVISION = "request_revision"
    SIGN_OFF = "sign_off"


TERMINAL_STATUSES = frozenset({InstructionStatus.SIGNED_OFF})
ALL_STATUSES = frozenset(InstructionStatus)


@dataclass(frozen=True)
class TransitionRule:
    action: Action
    roles: FrozenSet[Role]
    sources: FrozenSet[InstructionStatus]
    target: InstructionStatus
    edit_class: bool = False
    handoff: bool = False


RULES = {
    Action.LOG: TransitionRule(
        Action.LOG,
        frozenset({Role.REGISTRY_OFFICER}),
        frozenset({InstructionStatus.SUBMITTED}),
        InstructionStatus.LOGGED,
    ),
    Action.ASSIGN_COUNSEL: TransitionRule(
        Action.ASSIGN_COUNSEL,
        frozenset({Role.REGISTRY_OFFICER}),
        frozenset({InstructionStatus.LOGGED}),
        InstructionStatus.PC_ASSIGNED,
        handoff=True,
    ),
    Action.REASSIGN_COUNSEL: TransitionRule(
        Action.REASSIGN_COUNSEL,
        frozenset({Role.REGISTRY_OFFICER}),
        ALL_STATUSES - TERMINAL_STATUSES,
        InstructionStatus.PC_ASSIGNED,
        handoff=True,
    ),
    Action.ASSIGN_DRAFTER: TransitionRule(
        Action.ASSIGN_DRAFTER,
        frozenset({Role.COUNSEL}),
        frozenset({InstructionStatus.PC_ASSIGNED, InstructionStatus.ASSIGNED}),
        InstructionStatus.ASSIGNED,
        handoff=True,
    ),
    Action.SAVE_DRAFT: TransitionRule(
        Action.SAVE_DRAFT,
        frozenset({Role.DRAFTER}),
        frozenset({InstructionStatus.ASSIGNED}),
        InstructionStatus.ASSIGNED,
        edit_class=True,
    ),
    Action.SUBMIT_DRAFT: TransitionRule(
        Action.SUBMIT_DRAFT,
        frozenset({Role.DRAFTER}),
        frozenset({InstructionStatus.ASSIGNED}),
        InstructionStatus.DRAFT_SUBMITTED,
        edit_class=True,
        handoff=True,
    ),
    Action.REQUEST_REVISION: TransitionRule(
        Action.REQUEST_REVISION,
        frozenset({Role.SENIOR_COUNSEL, Role.ADMIN}),
        frozenset({InstructionStatus.DRAFT_SUBMITTED}),
        InstructionStatus.ASSIGNED,
        handoff=True,
    ),
    Action.SIGN_OFF: TransitionRule(
        Action.SIGN_OFF,
        frozenset({Role.SENIOR_COUNSEL, Role.ADMIN}),
        frozenset({InstructionStatus.DRAFT_SUBMITTED}),
        InstructionStatus.SIGNED_OFF,
        handoff=True,
    ),
}


def parse_action(value: str) -> Action:
    try:
        return Action(value)
    except ValueError as exc:
        raise InvalidInput(f"unknown action {value!r}") from exc


def parse_role(value: str) -> Role:
    try:
        return Role(value)
    except ValueError as exc:
        raise InvalidInput(f"unknown role {value!r}") from exc


def rule_for(action: Action) -> TransitionRule:
    return RULES[action]


def is_terminal(status: InstructionStatus) -> bool:
    return status in TERMINAL_STATUSES


def next_status(action: Action, role: Role, current: InstructionStatus) -> InstructionStatus:
    rule = RULES[action]
    if role not in rule.roles:
        raise InvalidTransition(action.value, role.value, current.value)
    if is_terminal(current) or current not in rule.sources:
        raise InvalidTransition(action.value, role.value, current.value)
    return rule.target


def allowed_actions(role: Role, current: InstructionStatus) -> List[Action]:
    if is_terminal(current):
        return []
    return [action for action, rule in RULES.items() if role in rule.roles and current in rule.sources]


def initial_status(pre_logged: bool = False) -> InstructionStatus:
    return InstructionStatus.LOGGED if pre_logged else InstructionStatus.SUBMITTED


def coerce_status(value: Optional[str]) -> InstructionStatus:
    try:
        return InstructionStatus(value)
    except ValueError as exc:
        raise InvalidInput(f"unknown status {value!r}") from exc


class StateMachine:
    next_status = staticmethod(next_status)
    allowed_actions = staticmethod(allowed_actions)
    initial_status = staticmethod(initial_status)
