import json
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Protocol

from efiling.config.settings import AppSettings
from efiling.workflow.state_machine import Role


class RoleDirectory(Protocol):
    def roles_for(self, user_id: str) -> FrozenSet[Role]:
        ...


class OpenRoleDirectory:
    """Trusts the role the caller claims. Used when no user map is configured."""

    def roles_for(self, user_id: str) -> FrozenSet[Role]:
        return frozenset(Role)


class MemoryRoleDirectory:
    def __init__(self, assignments: Optional[Mapping[str, Iterable[str]]] = None) -> None:
        self._roles: Dict[str, FrozenSet[Role]] = {}
        for user_id, roles in (assignments or {}).items():
            self._roles[user_id] = frozenset(Role(role) for role in roles)

    def roles_for(self, user_id: str) -> FrozenSet[Role]:
        return self._roles.get(user_id, frozenset())


def build_directory(settings: AppSettings) -> RoleDirectory:
    if not settings.user_roles_json:
        return OpenRoleDirectory()
    data = json.loads(settings.user_roles_json)
    if not isinstance(data, dict):
        raise RuntimeError("EFILING_USER_ROLES must be a JSON object of user id -> role list")
    return MemoryRoleDirectory(data)
