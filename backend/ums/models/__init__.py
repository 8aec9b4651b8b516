from ums.models.user import User, UserRole, UserStatus
from ums.models.activity_log import ActivityLog

__all__ = [
    "User",
    "UserRole",
    "UserStatus",
    "ActivityLog",
]
