"""Permission policy and request context consumed by the data source services."""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import NoReturn

from .exceptions import PermissionDeniedError


class PermissionPolicy(ABC):
    """Boolean checks per action, scoped by the projects a resource belongs to."""

    @abstractmethod
    def is_allowed(self, action: str, projects: Iterable[str]) -> bool:
        pass

    def can_create_datasource(self, projects: Iterable[str] = ()) -> bool:
        return self.is_allowed("create_datasource", projects)

    def can_update_datasource_settings(self, projects: Iterable[str] = ()) -> bool:
        return self.is_allowed("update_datasource_settings", projects)

    def can_update_datasource_params(self, projects: Iterable[str] = ()) -> bool:
        return self.is_allowed("update_datasource_params", projects)

    def can_delete_datasource(self, projects: Iterable[str] = ()) -> bool:
        return self.is_allowed("delete_datasource", projects)

    def can_read_data(self, projects: Iterable[str] = ()) -> bool:
        return self.is_allowed("read_data", projects)

    def can_run_queries(self, projects: Iterable[str] = ()) -> bool:
        return self.is_allowed("run_queries", projects)

    def throw_permission_error(self, action: str | None = None) -> NoReturn:
        raise PermissionDeniedError(
            "You do not have access to perform this action",
            {"action": action} if action else None,
        )


class AllowAllPolicy(PermissionPolicy):
    def is_allowed(self, action: str, projects: Iterable[str]) -> bool:
        return True


class ActionSetPolicy(PermissionPolicy):
    """
    Grants a fixed set of actions.

    With ``project_ids`` set, access is limited to resources whose projects all
    fall inside that set; resources without projects are then off limits.
    """

    def __init__(
        self, actions: Iterable[str], project_ids: Iterable[str] | None = None
    ):
        self.actions = frozenset(actions)
        self.project_ids = frozenset(project_ids) if project_ids is not None else None

    def is_allowed(self, action: str, projects: Iterable[str]) -> bool:
        if action not in self.actions:
            return False
        if self.project_ids is None:
            return True
        projects = list(projects)
        return bool(projects) and all(p in self.project_ids for p in projects)


@dataclass
class Organization:
    id: str
    default_datasource: str | None = None


@dataclass
class RequestContext:
    """Who is asking, on behalf of which organization."""

    organization: Organization
    user_id: str | None = None
    super_admin: bool = False
    permissions: PermissionPolicy = field(default_factory=AllowAllPolicy)

    @property
    def org_id(self) -> str:
        return self.organization.id
