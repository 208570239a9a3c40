from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.domain.models import Role

GROUP_OWNER_ROLE_NAME = "Group Owner"
DEFAULT_GROUP_NAME = "My organisation"


class CapabilityCategory(StrEnum):
    GROUP_MANAGEMENT = "group-management"
    MEMBERSHIP_MANAGEMENT = "membership-management"
    RESOURCE_MANAGEMENT = "resource-management"
    AUDIT = "audit"


class Capability(StrEnum):
    RENAME_GROUP = "rename-group"
    DELETE_GROUP = "delete-group"
    INVITE_MEMBER = "invite-member"
    REMOVE_MEMBER = "remove-member"
    CREATE_RESOURCE = "create-resource"
    UPDATE_RESOURCE_METADATA = "update-resource-metadata"
    DELETE_RESOURCE = "delete-resource"
    EXPORT_RESOURCE = "export-resource"
    VIEW_LOGS = "view-logs"
    EXPORT_LOGS = "export-logs"

    @property
    def field_name(self) -> str:
        return self.value.replace("-", "_")

    @property
    def category(self) -> CapabilityCategory:
        return CAPABILITY_CATEGORIES[self]


CAPABILITY_CATEGORIES: dict[Capability, CapabilityCategory] = {
    Capability.RENAME_GROUP: CapabilityCategory.GROUP_MANAGEMENT,
    Capability.DELETE_GROUP: CapabilityCategory.GROUP_MANAGEMENT,
    Capability.INVITE_MEMBER: CapabilityCategory.MEMBERSHIP_MANAGEMENT,
    Capability.REMOVE_MEMBER: CapabilityCategory.MEMBERSHIP_MANAGEMENT,
    Capability.CREATE_RESOURCE: CapabilityCategory.RESOURCE_MANAGEMENT,
    Capability.UPDATE_RESOURCE_METADATA: CapabilityCategory.RESOURCE_MANAGEMENT,
    Capability.DELETE_RESOURCE: CapabilityCategory.RESOURCE_MANAGEMENT,
    Capability.EXPORT_RESOURCE: CapabilityCategory.RESOURCE_MANAGEMENT,
    Capability.VIEW_LOGS: CapabilityCategory.AUDIT,
    Capability.EXPORT_LOGS: CapabilityCategory.AUDIT,
}

# Keyed by "<METHOD> <route path template>"; the group id is always the `id` path parameter.
ROUTE_CAPABILITIES: dict[str, Capability] = {
    "PATCH /api/group/{id}/update": Capability.RENAME_GROUP,
    "DELETE /api/group/{id}/delete": Capability.DELETE_GROUP,
    "POST /api/group/{id}/member/invite": Capability.INVITE_MEMBER,
    "DELETE /api/group/{id}/member/{user_id}": Capability.REMOVE_MEMBER,
    "PUT /api/group/{id}/roles": Capability.DELETE_GROUP,
    "DELETE /api/group/{id}/roles/{role_id}": Capability.DELETE_GROUP,
    "POST /api/group/{id}/roles/{role_id}/members/{user_id}": Capability.INVITE_MEMBER,
    "DELETE /api/group/{id}/roles/{role_id}/members/{user_id}": Capability.REMOVE_MEMBER,
    "GET /api/logs/{id}": Capability.VIEW_LOGS,
    "GET /api/logs/{id}/export": Capability.EXPORT_LOGS,
}


def capabilities_in(category: CapabilityCategory) -> list[Capability]:
    return [item for item in Capability if CAPABILITY_CATEGORIES[item] == category]


def required_capability(method: str, path_template: str) -> Capability | None:
    return ROUTE_CAPABILITIES.get(f"{method.upper()} {path_template}")


def parse_capability(name: str) -> Capability | None:
    try:
        return Capability(name)
    except ValueError:
        return None


def granted_capabilities(role: Role) -> frozenset[Capability]:
    return frozenset(item for item in Capability if getattr(role, item.field_name, False) is True)


def evaluate(roles: Iterable[Role], capability: Capability | str) -> bool:
    needed = parse_capability(str(capability))
    if needed is None:
        return False
    return any(needed in granted_capabilities(role) for role in roles)
