"""Allowed administrative role and status changes."""

from ums.models.user import UserRole, UserStatus

STATUS_TRANSITIONS: dict[UserStatus, frozenset[UserStatus]] = {
    UserStatus.ACTIVE: frozenset({UserStatus.INACTIVE, UserStatus.SUSPENDED}),
    UserStatus.INACTIVE: frozenset({UserStatus.ACTIVE, UserStatus.SUSPENDED}),
    # suspended accounts go through INACTIVE before they can be reactivated
    UserStatus.SUSPENDED: frozenset({UserStatus.INACTIVE}),
}

# ADMIN is never granted or revoked through this path
ROLE_TRANSITIONS: dict[UserRole, frozenset[UserRole]] = {
    UserRole.CLIENT: frozenset({UserRole.DEVELOPER, UserRole.MODERATOR}),
    UserRole.DEVELOPER: frozenset({UserRole.CLIENT, UserRole.MODERATOR}),
    UserRole.MODERATOR: frozenset({UserRole.CLIENT, UserRole.DEVELOPER}),
    UserRole.ADMIN: frozenset(),
}


def allowed_status_transition(current: UserStatus, proposed: UserStatus) -> bool:
    return proposed in STATUS_TRANSITIONS.get(current, frozenset())


def allowed_role_transition(current: UserRole, proposed: UserRole) -> bool:
    return proposed in ROLE_TRANSITIONS.get(current, frozenset())
