import pytest

from efiling.audit.recorder import AuditRecorder
from efiling.config.settings import AppSettings
from efiling.errors import ConcurrencyError, Forbidden, InvalidInput, InvalidTransition, NotFound, StoreUnavailable
from efiling.identity.directory import MemoryRoleDirectory
from efiling.ledger.memory_store import MemoryDraftsStore, MemoryInstructionsStore
from efiling.ledger.stores import build_stores
from efiling.locking.manager import LockManager
from efiling.notify.dispatcher import RecordingNotifier
from efiling.workflow.service import LOCK_DENIED, WorkflowService

SIGNATURE = {"signer_name": "Senior Counsel", "image_data": "iVBORw0KGgoAAAANSUhEUg=="}

USERS = {
    "reg": ["RegistryOfficer"],
    "pc": ["Counsel"],
    "dr": ["Drafter"],
    "dr2": ["Drafter"],
    "sc": ["SeniorCounsel"],
    "admin": ["Admin"],
}


class _FailingNotifier:
    def notify(self, event):
        raise ConnectionError("webhook down")


def _service(clock, notifier=None, stores=None):
    stores = stores or build_stores(AppSettings())
    locks = LockManager(stores.locks, ttl_seconds=60, clock=clock)
    recorder = AuditRecorder(stores, clock=clock)
    service = WorkflowService(
        stores,
        locks,
        recorder,
        MemoryRoleDirectory(USERS),
        notifier if notifier is not None else RecordingNotifier(),
        clock=clock,
    )
    return service, locks, recorder, stores


def _to_assigned(service):
    instruction = service.create_instruction("Finance (Amendment) Bill", priority="High", created_by="reg")
    iid = instruction.instruction_id
    service.transition(iid, "log", "reg", "RegistryOfficer")
    service.transition(iid, "assign_counsel", "reg", "RegistryOfficer", {"assignee_id": "pc"})
    service.transition(iid, "assign_drafter", "pc", "Counsel", {"assignee_id": "dr"})
    return iid


def test_full_pipeline_to_signed_off(clock):
    notifier = RecordingNotifier()
    service, locks, recorder, _ = _service(clock, notifier)
    instruction = service.create_instruction("Finance (Amendment) Bill")
    assert instruction.status == "Submitted"
    iid = instruction.instruction_id

    assert service.transition(iid, "log", "reg", "RegistryOfficer").status == "Logged"
    result = service.transition(iid, "assign_counsel", "reg", "RegistryOfficer", {"assignee_id": "pc"})
    assert result.status == "PCAssigned"
    result = service.transition(iid, "assign_drafter", "pc", "Counsel", {"assignee_id": "dr"})
    assert result.status == "Assigned"
    assert service.get_instruction(iid).assigned_user_id == "dr"

    assert locks.acquire(iid, "dr") is True
    result = service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>Clause 1</p>"})
    assert result.status == "DraftSubmitted"
    assert result.draft.version_number == 1
    assert locks.get_lock(iid) is None

    result = service.transition(iid, "sign_off", "sc", "SeniorCounsel", SIGNATURE)
    assert result.accepted and result.status == "SignedOff"

    with pytest.raises(InvalidTransition):
        service.transition(iid, "request_revision", "sc", "SeniorCounsel")
    with pytest.raises(InvalidTransition):
        service.transition(iid, "reassign_counsel", "reg", "RegistryOfficer", {"assignee_id": "pc"})
    assert service.get_instruction(iid).status == "SignedOff"

    assert [event.action for event in notifier.events] == [
        "assign_counsel",
        "assign_drafter",
        "submit_draft",
        "sign_off",
    ]
    kinds = [event.kind for event in recorder.timeline(iid)]
    assert kinds.count("StatusChange") == 6
    assert "DraftCreated" in kinds and "Signature" in kinds


def test_submit_while_other_user_holds_lock_is_denied(clock):
    service, locks, recorder, _ = _service(clock)
    iid = _to_assigned(service)
    assert locks.acquire(iid, "dr2") is True

    result = service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    assert result.accepted is False
    assert result.reason == LOCK_DENIED
    assert result.status == "Assigned"
    assert service.get_instruction(iid).status == "Assigned"
    assert recorder.list_drafts(iid) == []
    assert locks.get_lock(iid).holder_id == "dr2"


def test_save_keeps_lock_and_appends_versions(clock):
    service, locks, recorder, _ = _service(clock)
    iid = _to_assigned(service)

    first = service.transition(iid, "save_draft", "dr", "Drafter", {"content_html": "<p>a</p>"})
    clock.advance(10)
    second = service.transition(
        iid, "save_draft", "dr", "Drafter", {"content_html": "<p>b</p>", "version_note": "clause 2"}
    )
    assert (first.draft.version_number, second.draft.version_number) == (1, 2)
    assert locks.get_lock(iid).holder_id == "dr"
    assert recorder.latest_draft(iid).content_html == "<p>b</p>"

    submitted = service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>c</p>"})
    assert submitted.draft.version_number == 3
    assert submitted.draft.kind == "SUBMIT"
    assert locks.get_lock(iid) is None


def test_revision_loop_returns_to_drafter(clock):
    service, locks, recorder, _ = _service(clock)
    iid = _to_assigned(service)
    service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>v1</p>"})
    result = service.transition(iid, "request_revision", "admin", "Admin", {"notes": "tighten clause 3"})
    assert result.status == "Assigned"
    assert service.get_instruction(iid).assigned_user_id == "dr"
    result = service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>v2</p>"})
    assert result.draft.version_number == 2


def test_invalid_transition_leaves_status_and_releases_fresh_lock(clock):
    service, locks, recorder, _ = _service(clock)
    instruction = service.create_instruction("Bill")
    iid = instruction.instruction_id
    with pytest.raises(InvalidTransition):
        service.transition(iid, "save_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    assert service.get_instruction(iid).status == "Submitted"
    assert locks.get_lock(iid) is None
    assert recorder.list_drafts(iid) == []


def test_wrong_role_for_action_is_invalid_transition(clock):
    service, _, _, _ = _service(clock)
    iid = service.create_instruction("Bill").instruction_id
    with pytest.raises(InvalidTransition):
        service.transition(iid, "log", "pc", "Counsel")


def test_claimed_role_must_belong_to_user(clock):
    service, _, _, _ = _service(clock)
    iid = service.create_instruction("Bill").instruction_id
    with pytest.raises(Forbidden):
        service.transition(iid, "log", "dr", "RegistryOfficer")
    assert service.get_instruction(iid).status == "Submitted"


def test_assignee_must_hold_target_role(clock):
    service, _, _, _ = _service(clock)
    iid = service.create_instruction("Bill", pre_logged=True).instruction_id
    with pytest.raises(InvalidInput):
        service.transition(iid, "assign_counsel", "reg", "RegistryOfficer", {"assignee_id": "dr"})
    with pytest.raises(InvalidInput):
        service.transition(iid, "assign_counsel", "reg", "RegistryOfficer", {})


def test_sign_off_requires_signature_payload(clock):
    service, _, _, _ = _service(clock)
    iid = _to_assigned(service)
    service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    with pytest.raises(InvalidInput):
        service.transition(iid, "sign_off", "sc", "SeniorCounsel", {"signer_name": "SC"})
    assert service.get_instruction(iid).status == "DraftSubmitted"


def test_unknown_instruction_is_not_found(clock):
    service, _, _, _ = _service(clock)
    with pytest.raises(NotFound):
        service.transition("missing", "log", "reg", "RegistryOfficer")


def test_blank_user_is_invalid_input(clock):
    service, _, _, _ = _service(clock)
    with pytest.raises(InvalidInput):
        service.transition("7", "log", " ", "RegistryOfficer")


def test_notifier_failure_does_not_fail_transition(clock, caplog):
    service, _, _, _ = _service(clock, _FailingNotifier())
    iid = service.create_instruction("Bill", pre_logged=True).instruction_id
    result = service.transition(iid, "assign_counsel", "reg", "RegistryOfficer", {"assignee_id": "pc"})
    assert result.status == "PCAssigned"
    assert "notify.failed" in caplog.text


class _ConflictingInstructions(MemoryInstructionsStore):
    def __init__(self):
        super().__init__()
        self.conflicts = 0

    def update_instruction(self, instruction, etag):
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConcurrencyError("etag mismatch")
        return super().update_instruction(instruction, etag)


def test_status_write_retries_on_conflict(clock):
    stores = build_stores(AppSettings())
    stores.instructions = _ConflictingInstructions()
    service, _, _, _ = _service(clock, stores=stores)
    iid = service.create_instruction("Bill").instruction_id

    stores.instructions.conflicts = 2
    assert service.transition(iid, "log", "reg", "RegistryOfficer").status == "Logged"

    stores.instructions.conflicts = 10
    with pytest.raises(ConcurrencyError):
        service.transition(iid, "assign_counsel", "reg", "RegistryOfficer", {"assignee_id": "pc"})
    assert service.get_instruction(iid).status == "Logged"


def test_circulation_gate_and_responses(clock):
    service, _, recorder, _ = _service(clock)
    iid = _to_assigned(service)
    circulation = {"sent_to_email": "legal@ministry.example", "subject": "Draft for review"}

    with pytest.raises(InvalidTransition):
        service.send_to_ministry(iid, "pc", "Counsel", dict(circulation))

    result = service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    log = service.send_to_ministry(iid, "pc", "Counsel", dict(circulation))
    assert log.draft_id == result.draft.draft_id
    assert log.version_label == "v1"

    with pytest.raises(InvalidTransition):
        service.send_to_ministry(iid, "dr", "Drafter", dict(circulation))

    response = service.record_response(log.circulation_id, "reg", "RegistryOfficer", {"response_text": "No objection"})
    assert response.instruction_id == iid
    with pytest.raises(NotFound):
        service.record_response("missing", "reg", "RegistryOfficer", {"response_text": "?"})
    with pytest.raises(InvalidInput):
        service.record_response(log.circulation_id, "reg", "RegistryOfficer", {})

    kinds = [event.kind for event in recorder.timeline(iid)]
    assert "Circulation" in kinds and "Response" in kinds


def test_list_instructions_filters_by_status(clock):
    service, _, _, _ = _service(clock)
    service.create_instruction("A")
    clock.advance(1)
    service.create_instruction("B", pre_logged=True)
    assert [item.title for item in service.list_instructions(status="Logged")] == ["B"]
    assert len(service.list_instructions()) == 2


class _UnavailableDrafts(MemoryDraftsStore):
    def append_draft(self, draft):
        raise StoreUnavailable("table drafts unavailable")


def test_failed_draft_append_leaves_status_and_releases_fresh_lock(clock):
    stores = build_stores(AppSettings())
    service, locks, recorder, _ = _service(clock, stores=stores)
    iid = _to_assigned(service)
    stores.drafts = _UnavailableDrafts()

    with pytest.raises(StoreUnavailable):
        service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    assert service.get_instruction(iid).status == "Assigned"
    assert recorder.list_drafts(iid) == []
    assert locks.get_lock(iid) is None
    assert [entry.action for entry in stores.audit.list_entries(iid)][-1] == "assign_drafter"


def test_failed_draft_append_keeps_lock_already_held(clock):
    stores = build_stores(AppSettings())
    service, locks, _, _ = _service(clock, stores=stores)
    iid = _to_assigned(service)
    assert locks.acquire(iid, "dr") is True
    stores.drafts = _UnavailableDrafts()

    with pytest.raises(StoreUnavailable):
        service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    assert service.get_instruction(iid).status == "Assigned"
    assert locks.get_lock(iid).holder_id == "dr"


def test_exhausted_status_retries_release_fresh_lock(clock):
    stores = build_stores(AppSettings())
    stores.instructions = _ConflictingInstructions()
    service, locks, _, _ = _service(clock, stores=stores)
    iid = _to_assigned(service)
    assert locks.get_lock(iid) is None

    stores.instructions.conflicts = 10
    with pytest.raises(ConcurrencyError):
        service.transition(iid, "save_draft", "dr", "Drafter", {"content_html": "<p>x</p>"})
    assert locks.get_lock(iid) is None
    assert service.get_instruction(iid).status == "Assigned"


def test_circulation_allowed_from_assigned_and_signed_off(clock):
    service, _, _, _ = _service(clock)
    circulation = {"sent_to_email": "legal@ministry.example", "subject": "Working draft"}

    logged = service.create_instruction("Bill", pre_logged=True).instruction_id
    with pytest.raises(InvalidTransition):
        service.send_to_ministry(logged, "reg", "RegistryOfficer", dict(circulation))

    iid = _to_assigned(service)
    saved = service.transition(iid, "save_draft", "dr", "Drafter", {"content_html": "<p>wip</p>"})
    early = service.send_to_ministry(iid, "pc", "Counsel", dict(circulation))
    assert early.draft_id == saved.draft.draft_id

    service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>final</p>"})
    service.transition(iid, "sign_off", "sc", "SeniorCounsel", SIGNATURE)
    late = service.send_to_ministry(iid, "sc", "SeniorCounsel", dict(circulation, version_label="final"))
    assert late.version_label == "final"
    assert late.draft_id != early.draft_id


def test_review_comments_require_a_workflow_role(clock):
    service, _, _, _ = _service(clock)
    iid = _to_assigned(service)
    comment = service.add_comment(iid, "pc", {"body": "Clause 2 is too broad"})
    clock.advance(5)
    service.reply_to_comment(comment.comment_id, "dr", {"body": "Narrowed"})
    service.resolve_comment(comment.comment_id, "pc")

    with pytest.raises(Forbidden):
        service.add_comment(iid, "stranger", {"body": "hello"})
    with pytest.raises(InvalidInput):
        service.add_comment(iid, "pc", {"body": ""})
    with pytest.raises(NotFound):
        service.add_comment("missing", "pc", {"body": "hello"})

    (thread,) = service.list_comment_threads(iid)
    assert thread.resolved
    assert [reply.author_id for reply in thread.replies] == ["dr"]


def test_compare_drafts_for_known_instruction(clock):
    service, _, _, _ = _service(clock)
    iid = _to_assigned(service)
    service.transition(iid, "save_draft", "dr", "Drafter", {"content_html": "<p>a</p>"})
    service.transition(iid, "submit_draft", "dr", "Drafter", {"content_html": "<p>b</p>"})
    comparison = service.compare_drafts(iid)
    assert (comparison.old.content_html, comparison.new.content_html) == ("<p>a</p>", "<p>b</p>")
    with pytest.raises(NotFound):
        service.compare_drafts("missing")
