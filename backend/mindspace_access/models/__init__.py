from mindspace_access.models.content import Journal, MoodEntry
from mindspace_access.models.permission import AccessRule, AccessTemplate, PermissionAuditLog
from mindspace_access.models.user import User

__all__ = [
    # Identity
    "User",
    # Content (ownership lookups only)
    "Journal",
    "MoodEntry",
    # Access control
    "AccessRule",
    "AccessTemplate",
    "PermissionAuditLog",
]
