"""Append-only trace of an instruction: drafts, circulation, signatures, review comments, audit.

Nothing here updates or deletes a row once written.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
from uuid import uuid4

from efiling.errors import ConcurrencyError, NotFound
from efiling.ledger.models import (
    AuditEntry,
    CirculationLog,
    CirculationResponse,
    Comment,
    CommentResolution,
    Draft,
    Signature,
)
from efiling.ledger.stores import Stores
from efiling.shared.clock import Clock, parse_iso, utc_now
from efiling.shared.logging import get_logger, log_event

logger = get_logger("efiling.audit")

DRAFT_KIND_SAVE = "SAVE"
DRAFT_KIND_SUBMIT = "SUBMIT"
DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class TimelineEvent:
    kind: str
    timestamp: str
    user_id: Optional[str]
    summary: str
    ref_id: str


@dataclass(frozen=True)
class DraftComparison:
    old: Optional[Draft]
    new: Optional[Draft]


@dataclass
class CommentThread:
    comment: Comment
    replies: List[Comment] = field(default_factory=list)
    resolution: Optional[CommentResolution] = None

    @property
    def resolved(self) -> bool:
        return self.resolution is not None


class AuditRecorder:
    def __init__(self, stores: Stores, clock: Clock = utc_now, max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> None:
        self._stores = stores
        self._clock = clock
        self._max_attempts = max_attempts

    def _now(self) -> str:
        return self._clock().isoformat()

    def record_draft(
        self,
        instruction_id: str,
        author_id: str,
        content_html: str,
        kind: str = DRAFT_KIND_SAVE,
        note: Optional[str] = None,
    ) -> Draft:
        for _ in range(self._max_attempts):
            existing = self._stores.drafts.list_drafts(instruction_id)
            version = max((draft.version_number for draft in existing), default=0) + 1
            draft = Draft(
                draft_id=uuid4().hex,
                instruction_id=instruction_id,
                author_id=author_id,
                content_html=content_html,
                version_number=version,
                kind=kind,
                version_note=note,
                created_at=self._now(),
            )
            try:
                self._stores.drafts.append_draft(draft)
            except ConcurrencyError:
                continue
            log_event(
                logger,
                "audit.draft_recorded",
                instruction_id=instruction_id,
                draft_id=draft.draft_id,
                version_number=version,
                kind=kind,
            )
            return draft
        raise ConcurrencyError(f"could not allocate a draft version for {instruction_id}")

    def latest_draft(self, instruction_id: str) -> Optional[Draft]:
        drafts = self._stores.drafts.list_drafts(instruction_id)
        return drafts[-1] if drafts else None

    def list_drafts(self, instruction_id: str) -> List[Draft]:
        return self._stores.drafts.list_drafts(instruction_id)

    def get_draft(self, draft_id: str) -> Draft:
        draft = self._stores.drafts.get_draft(draft_id)
        if draft is None:
            raise NotFound(f"draft {draft_id} not found")
        return draft

    def compare_drafts(self, instruction_id: str) -> DraftComparison:
        drafts = self._stores.drafts.list_drafts(instruction_id)
        new = drafts[-1] if drafts else None
        old = drafts[-2] if len(drafts) > 1 else None
        return DraftComparison(old=old, new=new)

    def add_comment(
        self,
        instruction_id: str,
        author_id: str,
        body: str,
        draft_id: Optional[str] = None,
        selection: Optional[str] = None,
    ) -> Comment:
        if draft_id is not None and self.get_draft(draft_id).instruction_id != instruction_id:
            raise NotFound(f"draft {draft_id} not found on instruction {instruction_id}")
        comment = Comment(
            comment_id=uuid4().hex,
            instruction_id=instruction_id,
            author_id=author_id,
            body=body,
            parent_id=None,
            draft_id=draft_id,
            selection=selection,
            created_at=self._now(),
        )
        self._stores.comments.append_comment(comment)
        log_event(logger, "audit.comment_added", instruction_id=instruction_id, comment_id=comment.comment_id)
        return comment

    def get_comment(self, comment_id: str) -> Comment:
        comment = self._stores.comments.get_comment(comment_id)
        if comment is None:
            raise NotFound(f"comment {comment_id} not found")
        return comment

    def _thread_root(self, comment_id: str) -> Comment:
        comment = self.get_comment(comment_id)
        if comment.parent_id is None:
            return comment
        return self.get_comment(comment.parent_id)

    def reply_to_comment(self, comment_id: str, author_id: str, body: str) -> Comment:
        """Replies hang off the thread's root, so a reply to a reply joins the same thread."""
        root = self._thread_root(comment_id)
        reply = Comment(
            comment_id=uuid4().hex,
            instruction_id=root.instruction_id,
            author_id=author_id,
            body=body,
            parent_id=root.comment_id,
            draft_id=root.draft_id,
            selection=None,
            created_at=self._now(),
        )
        self._stores.comments.append_comment(reply)
        log_event(
            logger,
            "audit.comment_replied",
            instruction_id=root.instruction_id,
            comment_id=root.comment_id,
            reply_id=reply.comment_id,
        )
        return reply

    def resolve_comment(self, comment_id: str, user_id: str) -> CommentResolution:
        root = self._thread_root(comment_id)
        resolution = CommentResolution(
            comment_id=root.comment_id,
            instruction_id=root.instruction_id,
            resolved_by_user_id=user_id,
            resolved_at=self._now(),
        )
        try:
            self._stores.comments.append_resolution(resolution)
        except ConcurrencyError:
            # already resolved; the first resolution stands
            existing = self._resolutions(root.instruction_id).get(root.comment_id)
            if existing is None:
                raise
            return existing
        log_event(logger, "audit.comment_resolved", instruction_id=root.instruction_id, comment_id=root.comment_id)
        return resolution

    def _resolutions(self, instruction_id: str) -> Dict[str, CommentResolution]:
        return {item.comment_id: item for item in self._stores.comments.list_resolutions(instruction_id)}

    def list_threads(self, instruction_id: str) -> List[CommentThread]:
        """Newest thread first; replies oldest first. Resolved threads are included."""
        comments = sorted(self._stores.comments.list_comments(instruction_id), key=lambda c: parse_iso(c.created_at))
        resolutions = self._resolutions(instruction_id)
        threads: Dict[str, CommentThread] = {}
        for comment in comments:
            if comment.parent_id is None:
                threads[comment.comment_id] = CommentThread(comment, resolution=resolutions.get(comment.comment_id))
        for comment in comments:
            if comment.parent_id is not None and comment.parent_id in threads:
                threads[comment.parent_id].replies.append(comment)
        return list(reversed(list(threads.values())))

    def record_circulation(
        self,
        instruction_id: str,
        draft_id: str,
        sent_by_user_id: str,
        sent_to_email: str,
        subject: str,
        cc_email: Optional[str] = None,
        version_label: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CirculationLog:
        entry = CirculationLog(
            circulation_id=uuid4().hex,
            instruction_id=instruction_id,
            draft_id=draft_id,
            sent_to_email=sent_to_email,
            cc_email=cc_email,
            subject=subject,
            version_label=version_label,
            notes=notes,
            sent_by_user_id=sent_by_user_id,
            sent_at=self._now(),
        )
        self._stores.circulations.append_log(entry)
        log_event(
            logger,
            "audit.circulation_recorded",
            instruction_id=instruction_id,
            circulation_id=entry.circulation_id,
            draft_id=draft_id,
        )
        return entry

    def get_circulation(self, circulation_id: str) -> CirculationLog:
        entry = self._stores.circulations.get_log(circulation_id)
        if entry is None:
            raise NotFound(f"circulation {circulation_id} not found")
        return entry

    def record_response(
        self,
        circulation_id: str,
        received_by_user_id: str,
        response_text: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> CirculationResponse:
        circulation = self.get_circulation(circulation_id)
        response = CirculationResponse(
            response_id=uuid4().hex,
            circulation_id=circulation_id,
            instruction_id=circulation.instruction_id,
            response_text=response_text,
            document_id=document_id,
            received_by_user_id=received_by_user_id,
            received_at=self._now(),
        )
        self._stores.circulations.append_response(response)
        log_event(
            logger,
            "audit.response_recorded",
            instruction_id=circulation.instruction_id,
            circulation_id=circulation_id,
            response_id=response.response_id,
        )
        return response

    def record_signature(self, instruction_id: str, signer_id: str, signer_name: str, image_data: str) -> Signature:
        signature = Signature(
            signature_id=uuid4().hex,
            instruction_id=instruction_id,
            signer_id=signer_id,
            signer_name=signer_name,
            image_data=image_data,
            signed_at=self._now(),
        )
        self._stores.signatures.append_signature(signature)
        log_event(logger, "audit.signature_recorded", instruction_id=instruction_id, signer_id=signer_id)
        return signature

    def record_status_change(
        self,
        instruction_id: str,
        user_id: str,
        action: str,
        from_status: Optional[str],
        to_status: Optional[str],
        detail: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            entry_id=uuid4().hex,
            instruction_id=instruction_id,
            user_id=user_id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            detail=detail,
            created_at=self._now(),
        )
        self._stores.audit.append_entry(entry)
        return entry

    def timeline(self, instruction_id: str) -> List[TimelineEvent]:
        events: List[TimelineEvent] = []
        for draft in self._stores.drafts.list_drafts(instruction_id):
            summary = f"Draft v{draft.version_number} ({draft.kind})"
            if draft.version_note:
                summary = f"{summary}: {draft.version_note}"
            events.append(TimelineEvent("DraftCreated", draft.created_at, draft.author_id, summary, draft.draft_id))
        for log in self._stores.circulations.list_logs(instruction_id):
            events.append(
                TimelineEvent(
                    "Circulation",
                    log.sent_at,
                    log.sent_by_user_id,
                    f"Sent to {log.sent_to_email}: {log.subject}",
                    log.circulation_id,
                )
            )
        for response in self._stores.circulations.list_responses(instruction_id):
            events.append(
                TimelineEvent(
                    "Response",
                    response.received_at,
                    response.received_by_user_id,
                    response.response_text or "Response document received",
                    response.response_id,
                )
            )
        for signature in self._stores.signatures.list_signatures(instruction_id):
            events.append(
                TimelineEvent(
                    "Signature",
                    signature.signed_at,
                    signature.signer_id,
                    f"Signed by {signature.signer_name}",
                    signature.signature_id,
                )
            )
        for comment in self._stores.comments.list_comments(instruction_id):
            kind = "Comment" if comment.parent_id is None else "CommentReply"
            events.append(TimelineEvent(kind, comment.created_at, comment.author_id, comment.body, comment.comment_id))
        for resolution in self._stores.comments.list_resolutions(instruction_id):
            events.append(
                TimelineEvent(
                    "CommentResolved",
                    resolution.resolved_at,
                    resolution.resolved_by_user_id,
                    "Comment thread resolved",
                    resolution.comment_id,
                )
            )
        for entry in self._stores.audit.list_entries(instruction_id):
            events.append(
                TimelineEvent(
                    "StatusChange",
                    entry.created_at,
                    entry.user_id,
                    f"{entry.action}: {entry.from_status} -> {entry.to_status}",
                    entry.entry_id,
                )
            )
        # sorted() is stable, ties keep the order they were gathered in
        return sorted(events, key=lambda event: parse_iso(event.timestamp))
