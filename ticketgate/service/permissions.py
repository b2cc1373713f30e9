from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from ticketgate.service.errors import ForbiddenError
from ticketgate.storage.models import Membership

ROLE_ADMIN = "ADMIN"
ROLE_MEMBER = "MEMBER"


class Capability(str, Enum):
    """Named things a member of an organization may do."""

    MANAGE_CREDENTIALS = "manage_credentials"
    DELETE_TICKET = "delete_ticket"
    UPDATE_TICKET = "update_ticket"


_ADMIN_CAPABILITIES = frozenset({Capability.MANAGE_CREDENTIALS})


@dataclass(frozen=True)
class PermissionSet:
    """Capabilities one user holds in one organization, computed once per check."""

    organization_id: Optional[str]
    capabilities: FrozenSet[Capability] = frozenset()

    @classmethod
    def empty(cls, organization_id: Optional[str] = None) -> "PermissionSet":
        return cls(organization_id=organization_id)

    @classmethod
    def of(cls, organization_id: str, capabilities: Iterable[Capability]) -> "PermissionSet":
        return cls(organization_id=organization_id, capabilities=frozenset(capabilities))

    @classmethod
    def for_membership(cls, membership: Optional[Membership]) -> "PermissionSet":
        if membership is None:
            return cls.empty()
        granted = set()
        if membership.role == ROLE_ADMIN:
            granted |= _ADMIN_CAPABILITIES
        if membership.can_delete_ticket:
            granted.add(Capability.DELETE_TICKET)
        if membership.can_update_ticket:
            granted.add(Capability.UPDATE_TICKET)
        return cls.of(membership.organization_id, granted)

    @property
    def is_member(self) -> bool:
        return self.organization_id is not None

    def allows(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def require(self, capability: Capability) -> None:
        if not self.allows(capability):
            raise ForbiddenError(
                "You are not allowed to do this",
                detail={"capability": capability.value},
            )

    def __contains__(self, capability: object) -> bool:
        return capability in self.capabilities


__all__ = ["Capability", "PermissionSet", "ROLE_ADMIN", "ROLE_MEMBER"]
