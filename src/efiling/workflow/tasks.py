from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from efiling.ledger.interfaces import InstructionsStore

from .state_machine import Action, InstructionStatus, Role


@dataclass(frozen=True)
class Task:
    instruction_id: str
    title: str
    status: str
    action: str
    role: str
    priority: Optional[str]
    received_date: str


# (role, status, suggested action, only instructions assigned to the caller)
QUEUES: List[Tuple[Role, InstructionStatus, Action, bool]] = [
    (Role.REGISTRY_OFFICER, InstructionStatus.SUBMITTED, Action.LOG, False),
    (Role.REGISTRY_OFFICER, InstructionStatus.LOGGED, Action.ASSIGN_COUNSEL, False),
    (Role.COUNSEL, InstructionStatus.PC_ASSIGNED, Action.ASSIGN_DRAFTER, True),
    (Role.DRAFTER, InstructionStatus.ASSIGNED, Action.SUBMIT_DRAFT, True),
    (Role.SENIOR_COUNSEL, InstructionStatus.DRAFT_SUBMITTED, Action.SIGN_OFF, False),
    (Role.ADMIN, InstructionStatus.DRAFT_SUBMITTED, Action.SIGN_OFF, False),
]


class TaskQueue:
    """Work lists per role, read from the authoritative instruction status."""

    def __init__(self, instructions: InstructionsStore) -> None:
        self._instructions = instructions

    def tasks_for(self, user_id: str, roles: Iterable[Role]) -> List[Task]:
        roles = set(roles)
        seen: Set[str] = set()
        tasks: List[Task] = []
        for role, status, action, assigned_only in QUEUES:
            if role not in roles:
                continue
            assignee = user_id if assigned_only else None
            for instruction in self._instructions.list_instructions(status=status.value, assigned_user_id=assignee):
                if instruction.instruction_id in seen:
                    continue
                seen.add(instruction.instruction_id)
                tasks.append(
                    Task(
                        instruction_id=instruction.instruction_id,
                        title=instruction.title,
                        status=instruction.status,
                        action=action.value,
                        role=role.value,
                        priority=instruction.priority,
                        received_date=instruction.received_date,
                    )
                )
        return tasks
