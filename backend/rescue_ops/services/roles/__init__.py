"""
Roles

Static role catalog and the assignment manager that binds users to it.
"""
from .catalog import ROLE_DEFINITIONS, RoleCatalog, default_catalog
from .assignments import ROLE_CONFLICTS, RoleAssignmentManager
from .role_service import RoleService

__all__ = [
    "ROLE_DEFINITIONS",
    "RoleCatalog",
    "default_catalog",
    "ROLE_CONFLICTS",
    "RoleAssignmentManager",
    "RoleService",
]
