"""
PanelAuth Role-Based Access Control
Effective-permission resolution, wildcard grants and role management.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from panelauth.core.logging import LoggerMixin, get_logger
from panelauth.database.models import (
    ADMIN_ROLE, AuditAction, Permission, Role, User,
)
from .audit import AuditLogger
from .errors import (
    PermissionDeniedError,
    RoleAlreadyExistsError,
    RoleInUseError,
    RoleNotFoundError,
    SystemRoleModificationError,
    UserNotFoundError,
)

logger = get_logger(__name__)

WILDCARD = "*"


def permission_matches(granted: str, required: str) -> bool:
    """
    Does a single granted permission cover the required one?

    "*" covers everything, "category:*" covers every permission starting
    with "category:", anything else must match exactly.
    """
    if granted == WILDCARD or granted == required:
        return True
    if granted.endswith(":*"):
        return required.startswith(granted[:-1])
    return False


@dataclass(frozen=True)
class PermissionSet:
    """Immutable, deduplicated set of granted permission strings"""

    grants: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, *sources: Optional[Iterable[str]]) -> "PermissionSet":
        merged = set()
        for source in sources:
            merged.update(p for p in (source or []) if p)
        return cls(frozenset(merged))

    @classmethod
    def everything(cls) -> "PermissionSet":
        return cls(frozenset({WILDCARD}))

    @property
    def is_unrestricted(self) -> bool:
        return WILDCARD in self.grants

    def allows(self, required: str) -> bool:
        return any(permission_matches(granted, required) for granted in self.grants)

    def allows_any(self, required: Iterable[str]) -> bool:
        return any(self.allows(p) for p in required)

    def allows_all(self, required: Iterable[str]) -> bool:
        return all(self.allows(p) for p in required)

    def to_list(self) -> List[str]:
        return sorted(self.grants)

    def __contains__(self, required: str) -> bool:
        return self.allows(required)

    def __iter__(self):
        return iter(self.to_list())

    def __len__(self) -> int:
        return len(self.grants)


# Catalogue seeded on first start. Tuples are (name, display name, category).
DEFAULT_PERMISSIONS: Tuple[Tuple[str, str, str], ...] = (
    ("sites:read", "View Sites", "sites"),
    ("sites:write", "Manage Sites", "sites"),
    ("sites:delete", "Delete Sites", "sites"),
    ("docker:read", "View Containers", "docker"),
    ("docker:write", "Manage Containers", "docker"),
    ("files:read", "View Files", "files"),
    ("files:write", "Edit Files", "files"),
    ("files:delete", "Delete Files", "files"),
    ("database:read", "View Databases", "database"),
    ("database:write", "Manage Databases", "database"),
    ("monitor:read", "View Monitoring", "monitor"),
    ("cron:read", "View Cron Jobs", "cron"),
    ("cron:write", "Manage Cron Jobs", "cron"),
    ("firewall:read", "View Firewall", "firewall"),
    ("firewall:write", "Manage Firewall", "firewall"),
    ("terminal:access", "Terminal Access", "terminal"),
    ("users:read", "View Users", "users"),
    ("users:write", "Manage Users", "users"),
    ("users:delete", "Delete Users", "users"),
    ("settings:read", "View Settings", "settings"),
    ("settings:write", "Manage Settings", "settings"),
    ("plugins:read", "View Plugins", "plugins"),
    ("plugins:write", "Manage Plugins", "plugins"),
    ("audit:read", "View Audit Logs", "audit"),
)

DEFAULT_ROLES: Tuple[Dict[str, Any], ...] = (
    {
        "name": ADMIN_ROLE,
        "display_name": "Administrator",
        "description": "Full system access",
        "permissions": [WILDCARD],
        "priority": 100,
    },
    {
        "name": "operator",
        "display_name": "Operator",
        "description": "Manage sites, containers, files, databases and cron jobs",
        "permissions": [
            "sites:read", "sites:write", "docker:read", "docker:write",
            "files:read", "files:write", "database:read", "database:write",
            "monitor:read", "cron:read", "cron:write",
        ],
        "priority": 50,
    },
    {
        "name": "user",
        "display_name": "User",
        "description": "Basic access to sites, files and monitoring",
        "permissions": ["sites:read", "files:read", "monitor:read"],
        "priority": 10,
    },
    {
        "name": "readonly",
        "display_name": "Read Only",
        "description": "View-only access",
        "permissions": [
            "sites:read", "docker:read", "files:read",
            "database:read", "monitor:read", "cron:read",
        ],
        "priority": 5,
    },
    {
        "name": "api_client",
        "display_name": "API Client",
        "description": "Programmatic access; permissions come from API keys",
        "permissions": [],
        "priority": 1,
    },
)


def seed_default_data(db: Session) -> Dict[str, int]:
    """Insert missing system roles and catalogue permissions; safe to re-run"""
    existing_roles = set(db.scalars(select(Role.name)))
    existing_permissions = set(db.scalars(select(Permission.name)))

    roles_added = 0
    for role_def in DEFAULT_ROLES:
        if role_def["name"] in existing_roles:
            continue
        db.add(Role(
            name=role_def["name"],
            display_name=role_def["display_name"],
            description=role_def["description"],
            permissions=list(role_def["permissions"]),
            priority=role_def["priority"],
            is_system=True,
        ))
        roles_added += 1

    permissions_added = 0
    for name, display_name, category in DEFAULT_PERMISSIONS:
        if name in existing_permissions:
            continue
        db.add(Permission(
            name=name,
            display_name=display_name,
            category=category,
            is_system=True,
        ))
        permissions_added += 1

    db.commit()
    if roles_added or permissions_added:
        logger.info(f"Seeded {roles_added} roles and {permissions_added} permissions")
    return {"roles": roles_added, "permissions": permissions_added}


class AuthorizationResolver(LoggerMixin):
    """Resolves effective permissions and manages roles"""

    def __init__(self, db: Session, audit: Optional[AuditLogger] = None):
        self.db = db
        self.audit = audit or AuditLogger(db)

    # Resolution

    def _load_user(self, user: Union[User, str]) -> User:
        if isinstance(user, User):
            return user
        found = self.db.get(User, user)
        if found is None:
            raise UserNotFoundError()
        return found

    def role_permissions(self, role_name: str) -> List[str]:
        role = self.db.scalar(select(Role).where(Role.name == role_name))
        return list(role.permissions or []) if role else []

    def effective_permissions(self, user: Union[User, str]) -> PermissionSet:
        """Role permissions merged with the user's own overrides"""
        user = self._load_user(user)
        if user.is_admin():
            return PermissionSet.everything()
        return PermissionSet.of(self.role_permissions(user.role), user.permissions)

    def check_permission(self, user: Union[User, str], permission: str) -> bool:
        user = self._load_user(user)
        if user.is_admin():
            return True
        return self.effective_permissions(user).allows(permission)

    def require_permission(self, user: Union[User, str], permission: str) -> None:
        user = self._load_user(user)
        if not self.check_permission(user, permission):
            self.logger.warning(f"Permission {permission} denied for user {user.username}")
            raise PermissionDeniedError(f"Missing permission: {permission}", permission=permission)

    @staticmethod
    def check_context(context: Any, permission: str) -> bool:
        """Request-time check against an authenticated principal's snapshot"""
        if getattr(context, "role", None) == ADMIN_ROLE:
            return True
        return PermissionSet.of(getattr(context, "permissions", None)).allows(permission)

    # Roles

    def list_roles(self) -> List[Role]:
        return list(self.db.scalars(select(Role).order_by(Role.priority.desc(), Role.name.asc())))

    def get_role(self, role_id: str) -> Role:
        role = self.db.get(Role, role_id)
        if role is None:
            raise RoleNotFoundError()
        return role

    def get_role_by_name(self, name: str) -> Role:
        role = self.db.scalar(select(Role).where(Role.name == name))
        if role is None:
            raise RoleNotFoundError(f"Role not found: {name}")
        return role

    def create_role(
        self,
        name: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        priority: int = 0,
        actor_id: Optional[str] = None,
    ) -> Role:
        if self.db.scalar(select(func.count(Role.id)).where(Role.name == name)):
            raise RoleAlreadyExistsError(f"Role name already exists: {name}")

        role = Role(
            name=name,
            display_name=display_name or name,
            description=description,
            permissions=PermissionSet.of(permissions).to_list(),
            priority=priority,
            is_system=False,
        )
        self.db.add(role)
        self.db.commit()

        self.audit.record(
            AuditAction.ROLE_CREATE, "role",
            user_id=actor_id, resource_id=role.id, details={"name": role.name},
        )
        return role

    def update_role(
        self,
        role_id: str,
        display_name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        priority: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> Role:
        """
        Update role metadata.

        Permission edits on system roles are rejected; priority changes to
        system roles are silently ignored.
        """
        role = self.get_role(role_id)
        if role.is_system and permissions is not None:
            raise SystemRoleModificationError()

        updates: Dict[str, Any] = {}
        if display_name is not None:
            updates["display_name"] = display_name
        if description is not None:
            updates["description"] = description
        if permissions is not None:
            updates["permissions"] = PermissionSet.of(permissions).to_list()
        if priority is not None and not role.is_system:
            updates["priority"] = priority

        for key, value in updates.items():
            setattr(role, key, value)
        self.db.commit()

        self.audit.record(
            AuditAction.ROLE_UPDATE, "role",
            user_id=actor_id, resource_id=role.id, new_value=updates,
        )
        return role

    def delete_role(self, role_id: str, actor_id: Optional[str] = None) -> None:
        role = self.get_role(role_id)
        if role.is_system:
            raise SystemRoleModificationError("Cannot delete a system role")

        in_use = self.db.scalar(select(func.count(User.id)).where(User.role == role.name))
        if in_use:
            raise RoleInUseError(f"Role {role.name} is assigned to {in_use} users", users=in_use)

        name = role.name
        self.db.delete(role)
        self.db.commit()

        self.audit.record(
            AuditAction.ROLE_DELETE, "role",
            user_id=actor_id, resource_id=role_id, details={"name": name},
        )

    def get_role_users(self, role_name: str, page: int = 1, page_size: int = 20) -> Tuple[List[User], int]:
        query = select(User).where(User.role == role_name)
        total = self.db.scalar(select(func.count()).select_from(query.subquery())) or 0
        page = max(page, 1)
        users = self.db.scalars(
            query.order_by(User.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
        ).all()
        return list(users), total

    def assign_user_role(
        self,
        user_id: str,
        role_name: str,
        actor_id: Optional[str] = None,
        clear_overrides: bool = False,
    ) -> User:
        self.get_role_by_name(role_name)
        user = self._load_user(user_id)

        old_role = user.role
        user.role = role_name
        if clear_overrides:
            user.permissions = []
        self.db.commit()

        self.logger.info(f"Role of {user.username} changed from {old_role} to {role_name}")
        self.audit.record(
            AuditAction.ROLE_CHANGE, "user",
            user_id=actor_id, resource_id=user.id,
            old_value={"role": old_role}, new_value={"role": role_name},
        )
        return user

    # Catalogue

    def list_permissions(self) -> List[Permission]:
        return list(self.db.scalars(select(Permission).order_by(Permission.category, Permission.name)))

    def permissions_by_category(self) -> Dict[str, List[Permission]]:
        grouped: Dict[str, List[Permission]] = defaultdict(list)
        for permission in self.list_permissions():
            grouped[permission.category].append(permission)
        return dict(grouped)
