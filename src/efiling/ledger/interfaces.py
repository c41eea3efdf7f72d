from typing import List, Optional, Protocol

from .models import (
    AuditEntry,
    CirculationLog,
    CirculationResponse,
    Comment,
    CommentResolution,
    Draft,
    Instruction,
    Lock,
    Signature,
)


class LocksStore(Protocol):
    def get_lock(self, resource_id: str) -> Optional[Lock]:
        ...

    def create_lock(self, lock: Lock) -> Lock:
        """Insert-if-absent. Raises ConcurrencyError when a row already exists."""
        ...

    def replace_lock(self, lock: Lock, etag: str) -> Lock:
        """Replace the row only if its etag still matches. Raises ConcurrencyError otherwise."""
        ...

    def delete_lock(self, resource_id: str, etag: str) -> bool:
        """Delete the row only if its etag still matches. False when missing or modified."""
        ...

    def list_locks(self) -> List[Lock]:
        ...


class InstructionsStore(Protocol):
    def create_instruction(self, instruction: Instruction) -> Instruction:
        ...

    def get_instruction(self, instruction_id: str) -> Optional[Instruction]:
        ...

    def update_instruction(self, instruction: Instruction, etag: str) -> Instruction:
        ...

    def list_instructions(
        self, status: Optional[str] = None, assigned_user_id: Optional[str] = None
    ) -> List[Instruction]:
        ...


class DraftsStore(Protocol):
    def append_draft(self, draft: Draft) -> Draft:
        ...

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        ...

    def list_drafts(self, instruction_id: str) -> List[Draft]:
        ...


class CirculationStore(Protocol):
    def append_log(self, entry: CirculationLog) -> CirculationLog:
        ...

    def get_log(self, circulation_id: str) -> Optional[CirculationLog]:
        ...

    def list_logs(self, instruction_id: str) -> List[CirculationLog]:
        ...

    def append_response(self, response: CirculationResponse) -> CirculationResponse:
        ...

    def list_responses(self, instruction_id: str) -> List[CirculationResponse]:
        ...


class SignaturesStore(Protocol):
    def append_signature(self, signature: Signature) -> Signature:
        ...

    def list_signatures(self, instruction_id: str) -> List[Signature]:
        ...


class AuditStore(Protocol):
    def append_entry(self, entry: AuditEntry) -> AuditEntry:
        ...

    def list_entries(self, instruction_id: str) -> List[AuditEntry]:
        ...


class CommentsStore(Protocol):
    def append_comment(self, comment: Comment) -> Comment:
        ...

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        ...

    def list_comments(self, instruction_id: str) -> List[Comment]:
        ...

    def append_resolution(self, resolution: CommentResolution) -> CommentResolution:
        """Insert-if-absent per comment. Raises ConcurrencyError when already resolved."""
        ...

    def list_resolutions(self, instruction_id: str) -> List[CommentResolution]:
        ...
