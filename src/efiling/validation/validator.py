import json
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema

from efiling.errors import InvalidInput
from efiling.workflow.state_machine import Action


def contracts_root() -> Path:
    return Path(__file__).resolve().parents[1] / "contracts"


ACTION_SCHEMAS = {
    Action.ASSIGN_COUNSEL: "assignment.v1.schema.json",
    Action.REASSIGN_COUNSEL: "assignment.v1.schema.json",
    Action.ASSIGN_DRAFTER: "assignment.v1.schema.json",
    Action.SAVE_DRAFT: "draft.v1.schema.json",
    Action.SUBMIT_DRAFT: "draft.v1.schema.json",
    Action.REQUEST_REVISION: "revision.v1.schema.json",
    Action.SIGN_OFF: "sign-off.v1.schema.json",
}

INSTRUCTION_SCHEMA = "instruction-create.v1.schema.json"
CIRCULATION_SCHEMA = "circulation.v1.schema.json"
RESPONSE_SCHEMA = "response.v1.schema.json"
COMMENT_SCHEMA = "comment.v1.schema.json"
REPLY_SCHEMA = "comment-reply.v1.schema.json"


class SchemaValidator:
    def __init__(self, contracts_dir: Optional[Path] = None):
        self.contracts_dir = contracts_dir or contracts_root()
        self._cache: Dict[str, Dict[str, Any]] = {}

    def validate_action_payload(self, action: Action, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        schema_name = ACTION_SCHEMAS.get(action)
        payload = payload or {}
        if schema_name is None:
            return payload
        return self._validate(payload, schema_name)

    def validate_instruction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._validate(payload, INSTRUCTION_SCHEMA)

    def validate_circulation(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._validate(payload, CIRCULATION_SCHEMA)

    def validate_response(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._validate(payload, RESPONSE_SCHEMA)

    def validate_comment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._validate(payload, COMMENT_SCHEMA)

    def validate_reply(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._validate(payload, REPLY_SCHEMA)

    def _load_schema(self, name: str) -> Dict[str, Any]:
        if name in self._cache:
            return self._cache[name]
        with (self.contracts_dir / name).open("r", encoding="utf-8") as handle:
            schema = json.load(handle)
        self._cache[name] = schema
        return schema

    def _validate(self, instance: Any, name: str) -> Dict[str, Any]:
        schema = self._load_schema(name)
        try:
            jsonschema.validate(instance=instance, schema=schema)
        except jsonschema.ValidationError as exc:
            location = ".".join(str(part) for part in exc.absolute_path) or "payload"
            raise InvalidInput(f"{location}: {exc.message}") from exc
        return instance
