from dataclasses import dataclass

from efiling.config.settings import AppSettings

from .interfaces import (
    AuditStore,
    CirculationStore,
    CommentsStore,
    DraftsStore,
    InstructionsStore,
    LocksStore,
    SignaturesStore,
)
from .memory_store import (
    MemoryAuditStore,
    MemoryCirculationStore,
    MemoryCommentsStore,
    MemoryDraftsStore,
    MemoryInstructionsStore,
    MemoryLocksStore,
    MemorySignaturesStore,
)


@dataclass
class Stores:
    locks: LocksStore
    instructions: InstructionsStore
    drafts: DraftsStore
    circulations: CirculationStore
    signatures: SignaturesStore
    audit: AuditStore
    comments: CommentsStore


def build_stores(settings: AppSettings) -> Stores:
    if settings.storage_backend == "memory":
        return Stores(
            locks=MemoryLocksStore(),
            instructions=MemoryInstructionsStore(),
            drafts=MemoryDraftsStore(),
            circulations=MemoryCirculationStore(),
            signatures=MemorySignaturesStore(),
            audit=MemoryAuditStore(),
            comments=MemoryCommentsStore(),
        )

    if settings.storage_backend != "table":
        raise RuntimeError(f"Unsupported storage backend: {settings.storage_backend}")

    if not settings.table_connection_string:
        raise RuntimeError("EFILING_TABLE_CONNECTION is required for table storage")

    from azure.data.tables import TableServiceClient

    from .table_storage import (
        TableAuditStore,
        TableCirculationStore,
        TableCommentsStore,
        TableDraftsStore,
        TableInstructionsStore,
        TableLocksStore,
        TableSignaturesStore,
    )

    service_client = TableServiceClient.from_connection_string(settings.table_connection_string)
    retry = (settings.store_retry_attempts, settings.store_retry_backoff_seconds)
    return Stores(
        locks=TableLocksStore(service_client, settings.locks_table, *retry),
        instructions=TableInstructionsStore(service_client, settings.instructions_table, *retry),
        drafts=TableDraftsStore(service_client, settings.drafts_table, *retry),
        circulations=TableCirculationStore(
            service_client, settings.circulations_table, settings.responses_table, *retry
        ),
        signatures=TableSignaturesStore(service_client, settings.signatures_table, *retry),
        audit=TableAuditStore(service_client, settings.audit_table, *retry),
        comments=TableCommentsStore(
            service_client, settings.comments_table, settings.comment_resolutions_table, *retry
        ),
    )
