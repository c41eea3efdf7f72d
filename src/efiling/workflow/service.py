"""Lock-guarded instruction transitions.

Edit-class actions take the instruction's edit lock before anything else;
a denied lock is an ordinary result, not an error. Status is written with an
etag compare-and-swap and re-validated against the fresh row on conflict.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from uuid import uuid4

from efiling.audit.recorder import (
    DRAFT_KIND_SAVE,
    DRAFT_KIND_SUBMIT,
    AuditRecorder,
    CommentThread,
    DraftComparison,
)
from efiling.errors import ConcurrencyError, Forbidden, InvalidInput, InvalidTransition, NotFound
from efiling.identity.directory import RoleDirectory
from efiling.ledger.models import (
    CirculationLog,
    CirculationResponse,
    Comment,
    CommentResolution,
    Draft,
    Instruction,
)
from efiling.ledger.stores import Stores
from efiling.locking.manager import LockManager, require_identity, require_resource_id
from efiling.notify.dispatcher import HandoffEvent, Notifier
from efiling.shared.clock import Clock, utc_now
from efiling.shared.logging import get_logger, log_event
from efiling.validation.validator import SchemaValidator

from .state_machine import (
    Action,
    InstructionStatus,
    Role,
    coerce_status,
    initial_status,
    next_status,
    parse_action,
    parse_role,
    rule_for,
)

logger = get_logger("efiling.workflow")

LOCK_DENIED = "LOCK_DENIED"
DEFAULT_MAX_ATTEMPTS = 5

ASSIGNMENT_ACTIONS = {
    Action.ASSIGN_COUNSEL: Role.COUNSEL,
    Action.REASSIGN_COUNSEL: Role.COUNSEL,
    Action.ASSIGN_DRAFTER: Role.DRAFTER,
}

CIRCULATION_ROLES = frozenset({Role.REGISTRY_OFFICER, Role.COUNSEL, Role.SENIOR_COUNSEL, Role.ADMIN})
CIRCULATION_STATUSES = frozenset(
    {InstructionStatus.ASSIGNED, InstructionStatus.DRAFT_SUBMITTED, InstructionStatus.SIGNED_OFF}
)


@dataclass(frozen=True)
class TransitionResult:
    accepted: bool
    status: str
    reason: Optional[str] = None
    draft: Optional[Draft] = None


class WorkflowService:
    def __init__(
        self,
        stores: Stores,
        locks: LockManager,
        recorder: AuditRecorder,
        directory: RoleDirectory,
        notifier: Notifier,
        validator: Optional[SchemaValidator] = None,
        clock: Clock = utc_now,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._stores = stores
        self._locks = locks
        self._recorder = recorder
        self._directory = directory
        self._notifier = notifier
        self._validator = validator or SchemaValidator()
        self._clock = clock
        self._max_attempts = max_attempts

    def create_instruction(
        self,
        title: str,
        description: Optional[str] = None,
        department_id: Optional[str] = None,
        priority: Optional[str] = None,
        received_date: Optional[str] = None,
        pre_logged: bool = False,
        created_by: Optional[str] = None,
    ) -> Instruction:
        title = require_identity(title, "title")
        now = self._clock().isoformat()
        status = initial_status(pre_logged)
        instruction = self._stores.instructions.create_instruction(
            Instruction(
                instruction_id=uuid4().hex,
                title=title,
                description=description,
                department_id=department_id,
                status=status.value,
                assigned_user_id=None,
                priority=priority,
                received_date=received_date or now,
                created_at=now,
                updated_at=now,
            )
        )
        self._recorder.record_status_change(
            instruction.instruction_id, created_by or "system", "create", None, status.value
        )
        log_event(logger, "workflow.created", instruction_id=instruction.instruction_id, status=status.value)
        return instruction

    def get_instruction(self, instruction_id: str) -> Instruction:
        instruction = self._stores.instructions.get_instruction(instruction_id)
        if instruction is None:
            raise NotFound(f"instruction {instruction_id} not found")
        return instruction

    def list_instructions(
        self, status: Optional[str] = None, assigned_user_id: Optional[str] = None
    ) -> List[Instruction]:
        if status is not None:
            status = coerce_status(status).value
        return self._stores.instructions.list_instructions(status=status, assigned_user_id=assigned_user_id)

    def _authorize(self, user_id: str, role: Role) -> None:
        if role not in self._directory.roles_for(user_id):
            log_event(logger, "workflow.forbidden", level=logging.WARNING, user_id=user_id, role=role.value)
            raise Forbidden(f"user {user_id!r} does not hold role {role.value!r}")

    def _check_assignee(self, action: Action, payload: Dict[str, Any]) -> Optional[str]:
        required = ASSIGNMENT_ACTIONS.get(action)
        if required is None:
            return None
        assignee_id = require_identity(payload.get("assignee_id"), "assignee_id")
        if required not in self._directory.roles_for(assignee_id):
            raise InvalidInput(f"assignee {assignee_id!r} does not hold role {required.value!r}")
        return assignee_id

    def transition(
        self,
        instruction_id: str,
        action: str,
        acting_user_id: str,
        acting_role: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        instruction_id = require_resource_id(instruction_id, "instruction_id")
        acting_user_id = require_identity(acting_user_id, "acting_user_id")
        parsed_action = parse_action(action)
        role = parse_role(acting_role)
        payload = self._validator.validate_action_payload(parsed_action, payload)
        rule = rule_for(parsed_action)

        self._authorize(acting_user_id, role)
        assignee_id = self._check_assignee(parsed_action, payload)
        instruction = self.get_instruction(instruction_id)

        newly_locked = False
        if rule.edit_class:
            held = self._locks.get_lock(instruction_id)
            if not self._locks.acquire(instruction_id, acting_user_id):
                log_event(
                    logger,
                    "workflow.lock_denied",
                    instruction_id=instruction_id,
                    action=parsed_action.value,
                    user_id=acting_user_id,
                )
                return TransitionResult(accepted=False, status=instruction.status, reason=LOCK_DENIED)
            newly_locked = held is None or held.holder_id != acting_user_id

        try:
            # drafts go in before the status write, a failed append leaves the status as it was
            next_status(parsed_action, role, coerce_status(instruction.status))
            draft = self._append_draft(instruction_id, parsed_action, acting_user_id, payload)
            previous, updated = self._apply(instruction_id, parsed_action, role, assignee_id)
            self._record(updated, parsed_action, acting_user_id, previous, payload, draft)
        except Exception:
            if newly_locked:
                self._locks.release(instruction_id, acting_user_id)
            raise

        if parsed_action == Action.SUBMIT_DRAFT:
            self._locks.release(instruction_id, acting_user_id)

        log_event(
            logger,
            "workflow.transition",
            instruction_id=instruction_id,
            action=parsed_action.value,
            role=role.value,
            user_id=acting_user_id,
            from_status=previous,
            to_status=updated.status,
        )
        if rule.handoff:
            self._notify(updated, parsed_action, acting_user_id, previous)
        return TransitionResult(accepted=True, status=updated.status, draft=draft)

    def _apply(self, instruction_id: str, action: Action, role: Role, assignee_id: Optional[str]):
        for _ in range(self._max_attempts):
            current = self.get_instruction(instruction_id)
            status = coerce_status(current.status)
            target = next_status(action, role, status)
            changed = replace(
                current,
                status=target.value,
                assigned_user_id=assignee_id or current.assigned_user_id,
                updated_at=self._clock().isoformat(),
            )
            try:
                updated = self._stores.instructions.update_instruction(changed, current.etag or "")
            except ConcurrencyError:
                log_event(logger, "workflow.cas_conflict", instruction_id=instruction_id, action=action.value)
                continue
            return current.status, updated
        raise ConcurrencyError(f"instruction {instruction_id} changed concurrently, retry the action")

    def _append_draft(
        self, instruction_id: str, action: Action, user_id: str, payload: Dict[str, Any]
    ) -> Optional[Draft]:
        if action not in (Action.SAVE_DRAFT, Action.SUBMIT_DRAFT):
            return None
        kind = DRAFT_KIND_SUBMIT if action == Action.SUBMIT_DRAFT else DRAFT_KIND_SAVE
        return self._recorder.record_draft(
            instruction_id,
            user_id,
            payload["content_html"],
            kind=kind,
            note=payload.get("version_note"),
        )

    def _record(
        self,
        instruction: Instruction,
        action: Action,
        user_id: str,
        previous: str,
        payload: Dict[str, Any],
        draft: Optional[Draft] = None,
    ) -> None:
        detail = payload.get("notes")
        if draft is not None:
            detail = f"draft v{draft.version_number}"
        elif action == Action.SIGN_OFF:
            self._recorder.record_signature(
                instruction.instruction_id, user_id, payload["signer_name"], payload["image_data"]
            )
        elif action in ASSIGNMENT_ACTIONS:
            detail = f"assigned to {instruction.assigned_user_id}"
        self._recorder.record_status_change(
            instruction.instruction_id, user_id, action.value, previous, instruction.status, detail
        )

    def _notify(self, instruction: Instruction, action: Action, user_id: str, previous: str) -> None:
        event = HandoffEvent(
            instruction_id=instruction.instruction_id,
            action=action.value,
            from_status=previous,
            to_status=instruction.status,
            acting_user_id=user_id,
            assigned_user_id=instruction.assigned_user_id,
        )
        try:
            self._notifier.notify(event)
        except Exception as exc:
            log_event(
                logger,
                "notify.failed",
                level=logging.WARNING,
                instruction_id=instruction.instruction_id,
                action=action.value,
                error=str(exc),
            )

    def send_to_ministry(
        self,
        instruction_id: str,
        acting_user_id: str,
        acting_role: str,
        payload: Dict[str, Any],
    ) -> CirculationLog:
        acting_user_id = require_identity(acting_user_id, "acting_user_id")
        role = parse_role(acting_role)
        payload = self._validator.validate_circulation(payload)
        self._authorize(acting_user_id, role)
        instruction = self.get_instruction(instruction_id)
        if role not in CIRCULATION_ROLES:
            raise InvalidTransition("send_to_ministry", role.value, instruction.status)
        if coerce_status(instruction.status) not in CIRCULATION_STATUSES:
            raise InvalidTransition(
                "send_to_ministry",
                role.value,
                instruction.status,
                reason="instruction has not reached drafting",
            )
        draft = self._recorder.latest_draft(instruction_id)
        if draft is None:
            raise InvalidTransition(
                "send_to_ministry", role.value, instruction.status, reason="instruction has no draft to circulate"
            )
        return self._recorder.record_circulation(
            instruction_id,
            draft.draft_id,
            acting_user_id,
            payload["sent_to_email"],
            payload["subject"],
            cc_email=payload.get("cc_email"),
            version_label=payload.get("version_label") or f"v{draft.version_number}",
            notes=payload.get("notes"),
        )

    def record_response(
        self,
        circulation_id: str,
        acting_user_id: str,
        acting_role: str,
        payload: Dict[str, Any],
    ) -> CirculationResponse:
        acting_user_id = require_identity(acting_user_id, "acting_user_id")
        role = parse_role(acting_role)
        payload = self._validator.validate_response(payload)
        self._authorize(acting_user_id, role)
        if role not in CIRCULATION_ROLES:
            raise InvalidTransition("record_response", role.value, None)
        return self._recorder.record_response(
            circulation_id,
            acting_user_id,
            response_text=payload.get("response_text"),
            document_id=payload.get("document_id"),
        )

    def _require_member(self, user_id: str) -> None:
        if not self._directory.roles_for(user_id):
            log_event(logger, "workflow.forbidden", level=logging.WARNING, user_id=user_id, role=None)
            raise Forbidden(f"user {user_id!r} holds no workflow role")

    def add_comment(self, instruction_id: str, acting_user_id: str, payload: Dict[str, Any]) -> Comment:
        acting_user_id = require_identity(acting_user_id, "acting_user_id")
        payload = self._validator.validate_comment(payload)
        self._require_member(acting_user_id)
        self.get_instruction(instruction_id)
        return self._recorder.add_comment(
            instruction_id,
            acting_user_id,
            payload["body"],
            draft_id=payload.get("draft_id"),
            selection=payload.get("selection"),
        )

    def reply_to_comment(self, comment_id: str, acting_user_id: str, payload: Dict[str, Any]) -> Comment:
        acting_user_id = require_identity(acting_user_id, "acting_user_id")
        payload = self._validator.validate_reply(payload)
        self._require_member(acting_user_id)
        return self._recorder.reply_to_comment(comment_id, acting_user_id, payload["body"])

    def resolve_comment(self, comment_id: str, acting_user_id: str) -> CommentResolution:
        acting_user_id = require_identity(acting_user_id, "acting_user_id")
        self._require_member(acting_user_id)
        return self._recorder.resolve_comment(comment_id, acting_user_id)

    def list_comment_threads(self, instruction_id: str) -> List[CommentThread]:
        self.get_instruction(instruction_id)
        return self._recorder.list_threads(instruction_id)

    def compare_drafts(self, instruction_id: str) -> DraftComparison:
        self.get_instruction(instruction_id)
        return self._recorder.compare_drafts(instruction_id)
