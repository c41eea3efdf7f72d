from dataclasses import dataclass
from typing import Optional


@dataclass
class Lock:
    resource_id: str
    holder_id: str
    acquired_at: str
    expires_at: str
    etag: Optional[str] = None


@dataclass
class Instruction:
    instruction_id: str
    title: str
    description: Optional[str]
    department_id: Optional[str]
    status: str
    assigned_user_id: Optional[str]
    priority: Optional[str]
    received_date: str
    created_at: str
    updated_at: str
    etag: Optional[str] = None


@dataclass(frozen=True)
class Draft:
    draft_id: str
    instruction_id: str
    author_id: str
    content_html: str
    version_number: int
    kind: str
    version_note: Optional[str]
    created_at: str


@dataclass(frozen=True)
class CirculationLog:
    circulation_id: str
    instruction_id: str
    draft_id: str
    sent_to_email: str
    cc_email: Optional[str]
    subject: str
    version_label: Optional[str]
    notes: Optional[str]
    sent_by_user_id: str
    sent_at: str


@dataclass(frozen=True)
class CirculationResponse:
    response_id: str
    circulation_id: str
    instruction_id: str
    response_text: Optional[str]
    document_id: Optional[str]
    received_by_user_id: str
    received_at: str


@dataclass(frozen=True)
class Signature:
    signature_id: str
    instruction_id: str
    signer_id: str
    signer_name: str
    image_data: str
    signed_at: str


@dataclass(frozen=True)
class AuditEntry:
    entry_id: str
    instruction_id: str
    user_id: str
    action: str
    from_status: Optional[str]
    to_status: Optional[str]
    detail: Optional[str]
    created_at: str


@dataclass(frozen=True)
class Comment:
    comment_id: str
    instruction_id: str
    author_id: str
    body: str
    parent_id: Optional[str]
    draft_id: Optional[str]
    selection: Optional[str]
    created_at: str


@dataclass(frozen=True)
class CommentResolution:
    comment_id: str
    instruction_id: str
    resolved_by_user_id: str
    resolved_at: str
