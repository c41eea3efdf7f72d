from dataclasses import dataclass
import os
from typing import Optional


@dataclass
class AppSettings:
    storage_backend: str = "memory"
    table_connection_string: Optional[str] = None
    locks_table: str = "instructionlocks"
    instructions_table: str = "instructions"
    drafts_table: str = "drafts"
    circulations_table: str = "circulations"
    responses_table: str = "circulationresponses"
    signatures_table: str = "signatures"
    audit_table: str = "auditlog"
    comments_table: str = "comments"
    comment_resolutions_table: str = "commentresolutions"
    store_retry_attempts: int = 3
    store_retry_backoff_seconds: float = 0.2
    lock_ttl_seconds: int = 60
    reaper_enabled: bool = True
    reaper_interval_seconds: float = 60.0
    notify_backend: str = "noop"
    notify_webhook_url: Optional[str] = None
    service_bus_connection: Optional[str] = None
    notify_topic: str = "instruction-handoffs"
    user_roles_json: Optional[str] = None
    admin_enabled: bool = False
    admin_api_key: Optional[str] = None

    @classmethod
    def from_env(cls) -> "AppSettings":
        return cls(
            storage_backend=os.getenv("EFILING_STORAGE_BACKEND", "memory"),
            table_connection_string=os.getenv("EFILING_TABLE_CONNECTION"),
            locks_table=os.getenv("EFILING_LOCKS_TABLE", "instructionlocks"),
            instructions_table=os.getenv("EFILING_INSTRUCTIONS_TABLE", "instructions"),
            drafts_table=os.getenv("EFILING_DRAFTS_TABLE", "drafts"),
            circulations_table=os.getenv("EFILING_CIRCULATIONS_TABLE", "circulations"),
            responses_table=os.getenv("EFILING_RESPONSES_TABLE", "circulationresponses"),
            signatures_table=os.getenv("EFILING_SIGNATURES_TABLE", "signatures"),
            audit_table=os.getenv("EFILING_AUDIT_TABLE", "auditlog"),
            comments_table=os.getenv("EFILING_COMMENTS_TABLE", "comments"),
            comment_resolutions_table=os.getenv("EFILING_COMMENT_RESOLUTIONS_TABLE", "commentresolutions"),
            store_retry_attempts=int(os.getenv("EFILING_STORE_RETRY_ATTEMPTS", "3")),
            store_retry_backoff_seconds=float(os.getenv("EFILING_STORE_RETRY_BACKOFF_SECONDS", "0.2")),
            lock_ttl_seconds=int(os.getenv("EFILING_LOCK_TTL_SECONDS", "60")),
            reaper_enabled=os.getenv("EFILING_REAPER_ENABLED", "true").lower() == "true",
            reaper_interval_seconds=float(os.getenv("EFILING_REAPER_INTERVAL_SECONDS", "60")),
            notify_backend=os.getenv("EFILING_NOTIFY_BACKEND", "noop"),
            notify_webhook_url=os.getenv("EFILING_NOTIFY_WEBHOOK_URL"),
            service_bus_connection=os.getenv("EFILING_SERVICEBUS_CONNECTION"),
            notify_topic=os.getenv("EFILING_NOTIFY_TOPIC", "instruction-handoffs"),
            user_roles_json=os.getenv("EFILING_USER_ROLES"),
            admin_enabled=os.getenv("EFILING_ADMIN_ENABLED", "false").lower() == "true",
            admin_api_key=os.getenv("EFILING_ADMIN_API_KEY"),
        )
