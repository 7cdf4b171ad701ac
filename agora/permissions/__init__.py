from agora.permissions.engine import (
    Action,
    PermissionEngine,
    PermissionRule,
    Resolution,
    ResourceType,
    Scope,
    Subject,
    SubjectType,
)

__all__ = [
    "Action",
    "PermissionEngine",
    "PermissionRule",
    "Resolution",
    "ResourceType",
    "Scope",
    "Subject",
    "SubjectType",
]
