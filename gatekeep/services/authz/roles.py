from __future__ import annotations

from collections import deque
from fnmatch import fnmatchcase
import logging

from gatekeep.core.errors import ConfigurationError
from gatekeep.domain.config import RBACConfig, Role, find_role_cycle


logger = logging.getLogger(__name__)


def permission_matches(pattern: str, resource: str, action: str) -> bool:
    # Grants are "resource:action" globs; a bare resource pattern covers every action.
    if ":" not in pattern and pattern != "*":
        pattern = f"{pattern}:*"
    return fnmatchcase(f"{resource}:{action}", pattern)


class RoleGraph:
    def __init__(self, roles: tuple[Role, ...] | list[Role], *, inheritance: bool = True) -> None:
        self._roles = {role.id: role for role in roles}
        self._inheritance = inheritance
        cycle = find_role_cycle({role.id: role.inherited for role in self._roles.values()})
        if cycle:
            raise ConfigurationError(f"Role inheritance cycle: {' -> '.join(cycle)}", cycle=cycle)

    @classmethod
    def from_config(cls, config: RBACConfig) -> RoleGraph:
        return cls(config.roles, inheritance=config.inheritance)

    def expand(self, role_ids: tuple[str, ...] | list[str]) -> tuple[str, ...]:
        # Breadth-first closure in declaration order; unknown roles are skipped.
        seen: list[str] = []
        queue = deque(role_ids)
        while queue:
            role_id = queue.popleft()
            if role_id in seen:
                continue
            role = self._roles.get(role_id)
            if role is None:
                logger.debug("rbac_unknown_role role=%s", role_id)
                continue
            seen.append(role_id)
            if self._inheritance:
                queue.extend(role.inherited)
        return tuple(seen)

    def permissions(self, role_ids: tuple[str, ...] | list[str]) -> tuple[str, ...]:
        granted: list[str] = []
        for role_id in self.expand(role_ids):
            for permission in self._roles[role_id].permissions:
                if permission not in granted:
                    granted.append(permission)
        return tuple(granted)
