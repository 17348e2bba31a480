# Overview: Service-layer operations for capabilities; role grants and capability lookup.

"""
Capability Resolution

WHY: Transition gates and the authorization workflow ask one question:
does this actor hold capability X? Capabilities come from roles; a user
holds the union of the grants on all of their roles.

DESIGN PRINCIPLES:
- Fail closed: unknown users and users without roles hold nothing
- No caching: role grants can change between two requests
- Seeding is idempotent (safe to run on every deploy)
"""

from __future__ import annotations

from ..extensions import db
from ..errors import PermissionDeniedError
from ..models import User, UserRole, Role, RolePermission, Permission
from ..permissions import PERMISSION_DEFINITIONS, DEFAULT_ROLES, DEFAULT_ROLE_PERMISSIONS


def get_user_permissions(user_id: int | None) -> set[str]:
    """
    Get all capability codes for a user.

    Returns set of codes (e.g., {"MANAGE_ORDERS", "APPROVE_STATUS_CHANGES"}).
    """
    if user_id is None:
        return set()

    rows = (
        db.session.query(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id)
        .all()
    )
    return {code for (code,) in rows}


def user_has_permission(user_id: int | None, permission_code: str) -> bool:
    """Check if user has a specific capability."""
    return permission_code in get_user_permissions(user_id)


def require_permission(user_id: int | None, permission_code: str) -> None:
    """Raise PermissionDeniedError unless the user holds permission_code."""
    if not user_has_permission(user_id, permission_code):
        raise PermissionDeniedError(f"Permission denied: {permission_code}")


def users_with_permission(permission_code: str) -> list[int]:
    """
    Active user ids holding permission_code through any role.

    Used to pick notification recipients for pending authorization requests.
    """
    rows = (
        db.session.query(User.id)
        .join(UserRole, UserRole.user_id == User.id)
        .join(RolePermission, RolePermission.role_id == UserRole.role_id)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .filter(Permission.code == permission_code, User.is_active.is_(True))
        .distinct()
        .order_by(User.id)
        .all()
    )
    return [user_id for (user_id,) in rows]


def get_user_role_names(user_id: int) -> list[str]:
    """Get list of role names for a user."""
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .order_by(Role.name)
        .all()
    )
    return [name for (name,) in rows]


def assign_role(user_id: int, role_name: str) -> UserRole:
    """Attach a role to a user. Returns the existing link if already assigned."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise ValueError(f"Role '{role_name}' not found")

    existing = db.session.query(UserRole).filter_by(user_id=user_id, role_id=role.id).first()
    if existing:
        return existing

    link = UserRole(user_id=user_id, role_id=role.id)
    db.session.add(link)
    db.session.commit()
    return link


def create_default_roles() -> int:
    """Create standard roles if they don't exist."""
    created_count = 0
    for name, desc in DEFAULT_ROLES:
        existing = db.session.query(Role).filter_by(name=name).first()
        if not existing:
            db.session.add(Role(name=name, description=desc))
            created_count += 1

    db.session.commit()
    return created_count


def initialize_permissions() -> int:
    """
    Initialize all capability definitions in database.

    Idempotent: Safe to run multiple times.
    """
    created_count = 0

    for code, name, description, category in PERMISSION_DEFINITIONS:
        existing = db.session.query(Permission).filter_by(code=code).first()

        if not existing:
            permission = Permission(
                code=code,
                name=name,
                description=description,
                category=category
            )
            db.session.add(permission)
            created_count += 1

    db.session.commit()
    return created_count


def assign_default_role_permissions() -> int:
    """
    Link roles to their default capabilities (DEFAULT_ROLE_PERMISSIONS).

    Idempotent: skips existing grants, missing roles and unknown codes.
    """
    created_count = 0

    for role_name, permission_codes in DEFAULT_ROLE_PERMISSIONS.items():
        role = db.session.query(Role).filter_by(name=role_name).first()

        if not role:
            continue  # Role doesn't exist, skip

        for permission_code in permission_codes:
            permission = db.session.query(Permission).filter_by(code=permission_code).first()

            if not permission:
                continue

            existing = db.session.query(RolePermission).filter_by(
                role_id=role.id,
                permission_id=permission.id
            ).first()

            if not existing:
                db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                created_count += 1

    db.session.commit()
    return created_count


def seed_security() -> dict:
    """Roles, capabilities and default grants in one call (CLI `system init`)."""
    return {
        "roles": create_default_roles(),
        "permissions": initialize_permissions(),
        "grants": assign_default_role_permissions(),
    }


# Name used by the transition and authorization services
actor_has_capability = user_has_permission
