import threading
from dataclasses import replace
from typing import Dict, List, Optional

from efiling.errors import ConcurrencyError

from .interfaces import (
    AuditStore,
    CirculationStore,
    CommentsStore,
    DraftsStore,
    InstructionsStore,
    LocksStore,
    SignaturesStore,
)
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


class MemoryLocksStore(LocksStore):
    def __init__(self) -> None:
        self._by_resource: Dict[str, Lock] = {}
        self._mutex = threading.Lock()

    def get_lock(self, resource_id: str) -> Optional[Lock]:
        with self._mutex:
            lock = self._by_resource.get(resource_id)
            return None if lock is None else replace(lock)

    def create_lock(self, lock: Lock) -> Lock:
        with self._mutex:
            if lock.resource_id in self._by_resource:
                raise ConcurrencyError("lock already exists")
            created = replace(lock, etag="1")
            self._by_resource[lock.resource_id] = created
            return replace(created)

    def replace_lock(self, lock: Lock, etag: str) -> Lock:
        with self._mutex:
            current = self._by_resource.get(lock.resource_id)
            if current is None or current.etag != etag:
                raise ConcurrencyError("etag mismatch")
            updated = replace(lock, etag=str(int(etag) + 1))
            self._by_resource[lock.resource_id] = updated
            return replace(updated)

    def delete_lock(self, resource_id: str, etag: str) -> bool:
        with self._mutex:
            current = self._by_resource.get(resource_id)
            if current is None or current.etag != etag:
                return False
            del self._by_resource[resource_id]
            return True

    def list_locks(self) -> List[Lock]:
        with self._mutex:
            return [replace(lock) for lock in self._by_resource.values()]


class MemoryInstructionsStore(InstructionsStore):
    def __init__(self) -> None:
        self._by_id: Dict[str, Instruction] = {}
        self._mutex = threading.Lock()

    def create_instruction(self, instruction: Instruction) -> Instruction:
        with self._mutex:
            if instruction.instruction_id in self._by_id:
                raise ConcurrencyError("instruction already exists")
            created = replace(instruction, etag="1")
            self._by_id[instruction.instruction_id] = created
            return replace(created)

    def get_instruction(self, instruction_id: str) -> Optional[Instruction]:
        with self._mutex:
            instruction = self._by_id.get(instruction_id)
            return None if instruction is None else replace(instruction)

    def update_instruction(self, instruction: Instruction, etag: str) -> Instruction:
        with self._mutex:
            current = self._by_id.get(instruction.instruction_id)
            if current is None or current.etag != etag:
                raise ConcurrencyError("etag mismatch")
            updated = replace(instruction, etag=str(int(etag) + 1))
            self._by_id[instruction.instruction_id] = updated
            return replace(updated)

    def list_instructions(
        self, status: Optional[str] = None, assigned_user_id: Optional[str] = None
    ) -> List[Instruction]:
        with self._mutex:
            items = list(self._by_id.values())
        selected = []
        for item in items:
            if status is not None and item.status != status:
                continue
            if assigned_user_id is not None and item.assigned_user_id != assigned_user_id:
                continue
            selected.append(replace(item))
        return sorted(selected, key=lambda item: item.created_at)


class MemoryDraftsStore(DraftsStore):
    def __init__(self) -> None:
        self._drafts: List[Draft] = []
        self._mutex = threading.Lock()

    def append_draft(self, draft: Draft) -> Draft:
        with self._mutex:
            for existing in self._drafts:
                if existing.instruction_id == draft.instruction_id and existing.version_number == draft.version_number:
                    raise ConcurrencyError("draft version already exists")
            self._drafts.append(draft)
        return draft

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        with self._mutex:
            return next((draft for draft in self._drafts if draft.draft_id == draft_id), None)

    def list_drafts(self, instruction_id: str) -> List[Draft]:
        with self._mutex:
            drafts = [draft for draft in self._drafts if draft.instruction_id == instruction_id]
        return sorted(drafts, key=lambda draft: draft.version_number)


class MemoryCirculationStore(CirculationStore):
    def __init__(self) -> None:
        self._logs: List[CirculationLog] = []
        self._responses: List[CirculationResponse] = []
        self._mutex = threading.Lock()

    def append_log(self, entry: CirculationLog) -> CirculationLog:
        with self._mutex:
            self._logs.append(entry)
        return entry

    def get_log(self, circulation_id: str) -> Optional[CirculationLog]:
        with self._mutex:
            return next((log for log in self._logs if log.circulation_id == circulation_id), None)

    def list_logs(self, instruction_id: str) -> List[CirculationLog]:
        with self._mutex:
            return [log for log in self._logs if log.instruction_id == instruction_id]

    def append_response(self, response: CirculationResponse) -> CirculationResponse:
        with self._mutex:
            self._responses.append(response)
        return response

    def list_responses(self, instruction_id: str) -> List[CirculationResponse]:
        with self._mutex:
            return [item for item in self._responses if item.instruction_id == instruction_id]


class MemorySignaturesStore(SignaturesStore):
    def __init__(self) -> None:
        self._signatures: List[Signature] = []
        self._mutex = threading.Lock()

    def append_signature(self, signature: Signature) -> Signature:
        with self._mutex:
            self._signatures.append(signature)
        return signature

    def list_signatures(self, instruction_id: str) -> List[Signature]:
        with self._mutex:
            return [item for item in self._signatures if item.instruction_id == instruction_id]


class MemoryAuditStore(AuditStore):
    def __init__(self) -> None:
        self._entries: List[AuditEntry] = []
        self._mutex = threading.Lock()

    def append_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._mutex:
            self._entries.append(entry)
        return entry

    def list_entries(self, instruction_id: str) -> List[AuditEntry]:
        with self._mutex:
            return [item for item in self._entries if item.instruction_id == instruction_id]


class MemoryCommentsStore(CommentsStore):
    def __init__(self) -> None:
        self._comments: List[Comment] = []
        self._resolutions: Dict[str, CommentResolution] = {}
        self._mutex = threading.Lock()

    def append_comment(self, comment: Comment) -> Comment:
        with self._mutex:
            self._comments.append(comment)
        return comment

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._mutex:
            return next((item for item in self._comments if item.comment_id == comment_id), None)

    def list_comments(self, instruction_id: str) -> List[Comment]:
        with self._mutex:
            return [item for item in self._comments if item.instruction_id == instruction_id]

    def append_resolution(self, resolution: CommentResolution) -> CommentResolution:
        with self._mutex:
            if resolution.comment_id in self._resolutions:
                raise ConcurrencyError("comment already resolved")
            self._resolutions[resolution.comment_id] = resolution
        return resolution

    def list_resolutions(self, instruction_id: str) -> List[CommentResolution]:
        with self._mutex:
            return [item for item in self._resolutions.values() if item.instruction_id == instruction_id]
