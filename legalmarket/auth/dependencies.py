from dataclasses import dataclass
from typing import Iterable

from legalmarket.errors import Forbidden
from legalmarket.models import UserRole

STAFF_ROLES = (UserRole.SUPPORT, UserRole.MANAGER)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as handed over by the API layer."""

    user_id: str
    role: UserRole

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def require_role(identity: Identity, allowed_roles: Iterable[UserRole]) -> Identity:
    allowed = tuple(allowed_roles)
    if identity.role not in allowed:
        raise Forbidden(
            "Insufficient permissions",
            user_id=identity.user_id,
            role=identity.role.value,
            allowed=[role.value for role in allowed],
        )
    return identity


def require_owner(identity: Identity, owner_id: str, entity: str) -> Identity:
    if identity.user_id != owner_id:
        raise Forbidden(f"Caller does not own this {entity}", user_id=identity.user_id, entity=entity)
    return identity


# Convenience wrappers
def require_client(identity: Identity) -> Identity:
    return require_role(identity, [UserRole.CLIENT])


def require_lawyer(identity: Identity) -> Identity:
    return require_role(identity, [UserRole.LAWYER])


def require_staff(identity: Identity) -> Identity:
    return require_role(identity, STAFF_ROLES)
