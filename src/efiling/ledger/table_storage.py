import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, TypeVar

from azure.core import MatchConditions
from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceModifiedError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.data.tables import TableServiceClient, UpdateMode

from efiling.errors import ConcurrencyError, StoreUnavailable
from efiling.shared.logging import get_logger, log_event

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

T = TypeVar("T")

logger = get_logger("efiling.ledger.table")

LOCK_ROW_KEY = "lock"
INSTRUCTION_PARTITION = "instruction"


def _etag(entity: Any) -> Optional[str]:
    metadata = getattr(entity, "metadata", None) or {}
    return metadata.get("etag") or (entity.get("etag") if isinstance(entity, dict) else None)


def _quote(value: str) -> str:
    return value.replace("'", "''")


def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, (ServiceRequestError, ServiceResponseError)):
        return True
    if isinstance(exc, (ResourceExistsError, ResourceModifiedError, ResourceNotFoundError)):
        return False
    if isinstance(exc, HttpResponseError):
        return (exc.status_code or 0) >= 500 or exc.status_code == 429
    return False


class _TableStore:
    def __init__(
        self,
        service_client: TableServiceClient,
        table_name: str,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._table = service_client.create_table_if_not_exists(table_name)
        self._table_name = table_name
        self._retry_attempts = max(1, retry_attempts)
        self._retry_backoff = retry_backoff_seconds

    def _call(self, operation: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        last_error: Optional[Exception] = None
        for attempt in range(self._retry_attempts):
            try:
                return operation(*args, **kwargs)
            except HttpResponseError as exc:
                if not _is_transient(exc):
                    raise
                last_error = exc
            except (ServiceRequestError, ServiceResponseError) as exc:
                last_error = exc
            log_event(
                logger,
                "store.retry",
                table=self._table_name,
                attempt=attempt + 1,
                error=str(last_error),
            )
            if attempt + 1 < self._retry_attempts:
                time.sleep(self._retry_backoff * (2 ** attempt))
        raise StoreUnavailable(f"table {self._table_name} unavailable") from last_error

    def _get(self, partition_key: str, row_key: str) -> Optional[Any]:
        try:
            return self._call(self._table.get_entity, partition_key=partition_key, row_key=row_key)
        except ResourceNotFoundError:
            return None

    def _query(self, query_filter: Optional[str]) -> List[Any]:
        if query_filter is None:
            return self._call(lambda: list(self._table.list_entities()))
        return self._call(lambda: list(self._table.query_entities(query_filter)))

    def _insert(self, entity: Dict[str, Any]) -> Optional[str]:
        try:
            result = self._call(self._table.create_entity, entity=entity)
        except ResourceExistsError as exc:
            raise ConcurrencyError("entity already exists") from exc
        return _etag(result)

    def _replace(self, entity: Dict[str, Any], etag: str) -> Optional[str]:
        try:
            result = self._call(
                self._table.update_entity,
                entity=entity,
                mode=UpdateMode.REPLACE,
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        except (ResourceModifiedError, ResourceNotFoundError) as exc:
            raise ConcurrencyError("etag mismatch") from exc
        except HttpResponseError as exc:
            if exc.status_code == 412:
                raise ConcurrencyError("etag mismatch") from exc
            raise
        return _etag(result)


def _lock_entity(lock: Lock) -> Dict[str, Any]:
    return {
        "PartitionKey": lock.resource_id,
        "RowKey": LOCK_ROW_KEY,
        "holder_id": lock.holder_id,
        "acquired_at": lock.acquired_at,
        "expires_at": lock.expires_at,
    }


def _lock_from_entity(entity: Any) -> Lock:
    return Lock(
        resource_id=entity["PartitionKey"],
        holder_id=entity["holder_id"],
        acquired_at=entity["acquired_at"],
        expires_at=entity["expires_at"],
        etag=_etag(entity),
    )


class TableLocksStore(_TableStore, LocksStore):
    def get_lock(self, resource_id: str) -> Optional[Lock]:
        entity = self._get(resource_id, LOCK_ROW_KEY)
        return None if entity is None else _lock_from_entity(entity)

    def create_lock(self, lock: Lock) -> Lock:
        etag = self._insert(_lock_entity(lock))
        return replace(lock, etag=etag)

    def replace_lock(self, lock: Lock, etag: str) -> Lock:
        new_etag = self._replace(_lock_entity(lock), etag)
        return replace(lock, etag=new_etag)

    def delete_lock(self, resource_id: str, etag: str) -> bool:
        try:
            self._call(
                self._table.delete_entity,
                partition_key=resource_id,
                row_key=LOCK_ROW_KEY,
                etag=etag,
                match_condition=MatchConditions.IfNotModified,
            )
        except (ResourceModifiedError, ResourceNotFoundError):
            return False
        except HttpResponseError as exc:
            if exc.status_code == 412:
                return False
            raise
        return True

    def list_locks(self) -> List[Lock]:
        entities = self._query(f"RowKey eq '{LOCK_ROW_KEY}'")
        return [_lock_from_entity(entity) for entity in entities]


def _instruction_entity(instruction: Instruction) -> Dict[str, Any]:
    return {
        "PartitionKey": INSTRUCTION_PARTITION,
        "RowKey": instruction.instruction_id,
        "title": instruction.title,
        "description": instruction.description,
        "department_id": instruction.department_id,
        "status": instruction.status,
        "assigned_user_id": instruction.assigned_user_id,
        "priority": instruction.priority,
        "received_date": instruction.received_date,
        "created_at": instruction.created_at,
        "updated_at": instruction.updated_at,
    }


def _instruction_from_entity(entity: Any) -> Instruction:
    return Instruction(
        instruction_id=entity["RowKey"],
        title=entity["title"],
        description=entity.get("description"),
        department_id=entity.get("department_id"),
        status=entity["status"],
        assigned_user_id=entity.get("assigned_user_id"),
        priority=entity.get("priority"),
        received_date=entity["received_date"],
        created_at=entity["created_at"],
        updated_at=entity["updated_at"],
        etag=_etag(entity),
    )


class TableInstructionsStore(_TableStore, InstructionsStore):
    def create_instruction(self, instruction: Instruction) -> Instruction:
        etag = self._insert(_instruction_entity(instruction))
        return replace(instruction, etag=etag)

    def get_instruction(self, instruction_id: str) -> Optional[Instruction]:
        entity = self._get(INSTRUCTION_PARTITION, instruction_id)
        return None if entity is None else _instruction_from_entity(entity)

    def update_instruction(self, instruction: Instruction, etag: str) -> Instruction:
        new_etag = self._replace(_instruction_entity(instruction), etag)
        return replace(instruction, etag=new_etag)

    def list_instructions(
        self, status: Optional[str] = None, assigned_user_id: Optional[str] = None
    ) -> List[Instruction]:
        clauses = [f"PartitionKey eq '{INSTRUCTION_PARTITION}'"]
        if status is not None:
            clauses.append(f"status eq '{_quote(status)}'")
        if assigned_user_id is not None:
            clauses.append(f"assigned_user_id eq '{_quote(assigned_user_id)}'")
        entities = self._query(" and ".join(clauses))
        items = [_instruction_from_entity(entity) for entity in entities]
        return sorted(items, key=lambda item: item.created_at)


class TableDraftsStore(_TableStore, DraftsStore):
    def append_draft(self, draft: Draft) -> Draft:
        self._insert(
            {
                "PartitionKey": draft.instruction_id,
                "RowKey": f"{draft.version_number:06d}",
                "draft_id": draft.draft_id,
                "author_id": draft.author_id,
                "content_html": draft.content_html,
                "version_number": draft.version_number,
                "kind": draft.kind,
                "version_note": draft.version_note,
                "created_at": draft.created_at,
            }
        )
        return draft

    def get_draft(self, draft_id: str) -> Optional[Draft]:
        entities = self._query(f"draft_id eq '{_quote(draft_id)}'")
        return _draft_from_entity(entities[0]) if entities else None

    def list_drafts(self, instruction_id: str) -> List[Draft]:
        entities = self._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        drafts = [_draft_from_entity(entity) for entity in entities]
        return sorted(drafts, key=lambda draft: draft.version_number)


def _draft_from_entity(entity: Any) -> Draft:
    return Draft(
        draft_id=entity["draft_id"],
        instruction_id=entity["PartitionKey"],
        author_id=entity["author_id"],
        content_html=entity.get("content_html", ""),
        version_number=int(entity.get("version_number", 0)),
        kind=entity.get("kind", "SAVE"),
        version_note=entity.get("version_note"),
        created_at=entity["created_at"],
    )


def _log_from_entity(entity: Any) -> CirculationLog:
    return CirculationLog(
        circulation_id=entity["circulation_id"],
        instruction_id=entity["PartitionKey"],
        draft_id=entity["draft_id"],
        sent_to_email=entity["sent_to_email"],
        cc_email=entity.get("cc_email"),
        subject=entity.get("subject", ""),
        version_label=entity.get("version_label"),
        notes=entity.get("notes"),
        sent_by_user_id=entity["sent_by_user_id"],
        sent_at=entity["sent_at"],
    )


def _response_from_entity(entity: Any) -> CirculationResponse:
    return CirculationResponse(
        response_id=entity["response_id"],
        circulation_id=entity["circulation_id"],
        instruction_id=entity["PartitionKey"],
        response_text=entity.get("response_text"),
        document_id=entity.get("document_id"),
        received_by_user_id=entity["received_by_user_id"],
        received_at=entity["received_at"],
    )


class TableCirculationStore(CirculationStore):
    """Circulation logs and their responses live in two tables sharing the instruction partition."""

    def __init__(
        self,
        service_client: TableServiceClient,
        logs_table: str,
        responses_table: str,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._logs = _TableStore(service_client, logs_table, retry_attempts, retry_backoff_seconds)
        self._responses = _TableStore(service_client, responses_table, retry_attempts, retry_backoff_seconds)

    def append_log(self, entry: CirculationLog) -> CirculationLog:
        self._logs._insert(
            {
                "PartitionKey": entry.instruction_id,
                "RowKey": f"{entry.sent_at}#{entry.circulation_id}",
                "circulation_id": entry.circulation_id,
                "draft_id": entry.draft_id,
                "sent_to_email": entry.sent_to_email,
                "cc_email": entry.cc_email,
                "subject": entry.subject,
                "version_label": entry.version_label,
                "notes": entry.notes,
                "sent_by_user_id": entry.sent_by_user_id,
                "sent_at": entry.sent_at,
            }
        )
        return entry

    def get_log(self, circulation_id: str) -> Optional[CirculationLog]:
        entities = self._logs._query(f"circulation_id eq '{_quote(circulation_id)}'")
        return _log_from_entity(entities[0]) if entities else None

    def list_logs(self, instruction_id: str) -> List[CirculationLog]:
        entities = self._logs._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        return [_log_from_entity(entity) for entity in entities]

    def append_response(self, response: CirculationResponse) -> CirculationResponse:
        self._responses._insert(
            {
                "PartitionKey": response.instruction_id,
                "RowKey": f"{response.received_at}#{response.response_id}",
                "response_id": response.response_id,
                "circulation_id": response.circulation_id,
                "response_text": response.response_text,
                "document_id": response.document_id,
                "received_by_user_id": response.received_by_user_id,
                "received_at": response.received_at,
            }
        )
        return response

    def list_responses(self, instruction_id: str) -> List[CirculationResponse]:
        entities = self._responses._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        return [_response_from_entity(entity) for entity in entities]


class TableSignaturesStore(_TableStore, SignaturesStore):
    def append_signature(self, signature: Signature) -> Signature:
        self._insert(
            {
                "PartitionKey": signature.instruction_id,
                "RowKey": f"{signature.signed_at}#{signature.signature_id}",
                "signature_id": signature.signature_id,
                "signer_id": signature.signer_id,
                "signer_name": signature.signer_name,
                "image_data": signature.image_data,
                "signed_at": signature.signed_at,
            }
        )
        return signature

    def list_signatures(self, instruction_id: str) -> List[Signature]:
        entities = self._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        return [
            Signature(
                signature_id=entity["signature_id"],
                instruction_id=entity["PartitionKey"],
                signer_id=entity["signer_id"],
                signer_name=entity["signer_name"],
                image_data=entity.get("image_data", ""),
                signed_at=entity["signed_at"],
            )
            for entity in entities
        ]


class TableAuditStore(_TableStore, AuditStore):
    def append_entry(self, entry: AuditEntry) -> AuditEntry:
        self._insert(
            {
                "PartitionKey": entry.instruction_id,
                "RowKey": f"{entry.created_at}#{entry.entry_id}",
                "entry_id": entry.entry_id,
                "user_id": entry.user_id,
                "action": entry.action,
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "detail": entry.detail,
                "created_at": entry.created_at,
            }
        )
        return entry

    def list_entries(self, instruction_id: str) -> List[AuditEntry]:
        entities = self._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        return [
            AuditEntry(
                entry_id=entity["entry_id"],
                instruction_id=entity["PartitionKey"],
                user_id=entity["user_id"],
                action=entity["action"],
                from_status=entity.get("from_status"),
                to_status=entity.get("to_status"),
                detail=entity.get("detail"),
                created_at=entity["created_at"],
            )
            for entity in entities
        ]


def _comment_from_entity(entity: Any) -> Comment:
    return Comment(
        comment_id=entity["comment_id"],
        instruction_id=entity["PartitionKey"],
        author_id=entity["author_id"],
        body=entity.get("body", ""),
        parent_id=entity.get("parent_id"),
        draft_id=entity.get("draft_id"),
        selection=entity.get("selection"),
        created_at=entity["created_at"],
    )


class TableCommentsStore(CommentsStore):
    """Comments and resolutions share the instruction partition; a resolution's RowKey is its comment id."""

    def __init__(
        self,
        service_client: TableServiceClient,
        comments_table: str,
        resolutions_table: str,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.2,
    ) -> None:
        self._comments = _TableStore(service_client, comments_table, retry_attempts, retry_backoff_seconds)
        self._resolutions = _TableStore(service_client, resolutions_table, retry_attempts, retry_backoff_seconds)

    def append_comment(self, comment: Comment) -> Comment:
        self._comments._insert(
            {
                "PartitionKey": comment.instruction_id,
                "RowKey": f"{comment.created_at}#{comment.comment_id}",
                "comment_id": comment.comment_id,
                "author_id": comment.author_id,
                "body": comment.body,
                "parent_id": comment.parent_id,
                "draft_id": comment.draft_id,
                "selection": comment.selection,
                "created_at": comment.created_at,
            }
        )
        return comment

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        entities = self._comments._query(f"comment_id eq '{_quote(comment_id)}'")
        return _comment_from_entity(entities[0]) if entities else None

    def list_comments(self, instruction_id: str) -> List[Comment]:
        entities = self._comments._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        return [_comment_from_entity(entity) for entity in entities]

    def append_resolution(self, resolution: CommentResolution) -> CommentResolution:
        self._resolutions._insert(
            {
                "PartitionKey": resolution.instruction_id,
                "RowKey": resolution.comment_id,
                "resolved_by_user_id": resolution.resolved_by_user_id,
                "resolved_at": resolution.resolved_at,
            }
        )
        return resolution

    def list_resolutions(self, instruction_id: str) -> List[CommentResolution]:
        entities = self._resolutions._query(f"PartitionKey eq '{_quote(instruction_id)}'")
        return [
            CommentResolution(
                comment_id=entity["RowKey"],
                instruction_id=entity["PartitionKey"],
                resolved_by_user_id=entity["resolved_by_user_id"],
                resolved_at=entity["resolved_at"],
            )
            for entity in entities
        ]
