"""
Role registry and admin authorization gate.

Roles are resolved from the environment allow-lists (and, when
USE_DATABASE_ROLES is on, from the persisted user role). Resolved roles are
cached per process for ROLE_CACHE_TTL seconds.
"""

import logging
import time
from typing import Dict, List, Optional, Tuple

from pymongo.errors import PyMongoError

import config
from database import db, ensure_db, oid, utcnow, with_id
from errors import AuthorizationError, NotFoundError, PersistenceError, ValidationError
from schemas import RoleChange

logger = logging.getLogger(__name__)

ADMIN = "admin"
CLIENT = "client"
PILOT = "pilot"
USER = "user"
ROLES = [ADMIN, CLIENT, PILOT, USER]

# ============================================
# ROLE -> PERMISSIONS
# ============================================
ROLE_PERMISSIONS: Dict[str, List[str]] = {
    ADMIN: [
        "manage_users",
        "manage_settings",
        "view_analytics",
        "manage_bookings",
        "manage_missions",
        "create_jobs",
        "manage_own_jobs",
        "view_assets",
        "download_assets",
        "view_profile",
        "edit_profile",
        "upload_assets",
        "view_flight_data",
    ],
    CLIENT: [
        "create_jobs",
        "manage_own_jobs",
        "view_assets",
        "download_assets",
        "view_profile",
        "edit_profile",
    ],
    PILOT: [
        "upload_assets",
        "manage_missions",
        "view_flight_data",
        "view_profile",
        "edit_profile",
    ],
    USER: [
        "view_profile",
        "edit_profile",
    ],
}

ROLE_DESCRIPTIONS = {
    ADMIN: "Administrator with full system access",
    PILOT: "Pilot with mission management capabilities",
    CLIENT: "Client with booking and project management access",
    USER: "User with basic platform access",
}


def _nav(name: str, section: Optional[str], icon: str) -> dict:
    href = f"/dashboard?section={section}" if section else "/dashboard"
    return {"name": name, "href": href, "icon": icon}


NAVIGATION = {
    ADMIN: [
        _nav("Dashboard", None, "FiHome"),
        _nav("Bookings", "bookings", "FiCalendar"),
        _nav("Analytics", "analytics", "FiBarChart"),
        _nav("Settings", "settings", "FiSettings"),
    ],
    CLIENT: [
        _nav("Dashboard", None, "FiHome"),
        _nav("My Jobs", "jobs", "FiFileText"),
        _nav("Create Job", "create", "FiPlus"),
        _nav("Assets", "assets", "FiFolder"),
        _nav("Profile", "profile", "FiUser"),
    ],
    PILOT: [
        _nav("Dashboard", None, "FiHome"),
        _nav("Missions", "missions", "FiMap"),
        _nav("Upload Assets", "upload", "FiUpload"),
        _nav("Flight Data", "flights", "FiActivity"),
        _nav("Profile", "profile", "FiUser"),
    ],
    USER: [
        _nav("Dashboard", None, "FiHome"),
        _nav("Profile", "profile", "FiUser"),
    ],
}

# email -> (resolved_at, role)
_role_cache: Dict[str, Tuple[float, str]] = {}


def clear_cache():
    """Drop every cached role. Call after the allow-lists change."""
    _role_cache.clear()
    logger.info("Role cache cleared")


def invalidate(email: Optional[str]):
    if email:
        _role_cache.pop(email.lower(), None)


def _cached(email: str) -> Optional[str]:
    entry = _role_cache.get(email)
    if entry is None:
        return None
    resolved_at, role = entry
    if time.time() - resolved_at >= config.role_cache_ttl():
        _role_cache.pop(email, None)
        return None
    return role


def _persisted_role(email: str) -> Optional[str]:
    if db is None:
        return None
    try:
        user = db["user"].find_one({"email": email}, {"role": 1})
    except PyMongoError:
        logger.exception("Could not read persisted role")
        return None
    return user.get("role") if user else None


def _honored(role: Optional[str], email: str) -> Optional[str]:
    # A stored admin outside the organization domain is treated as a plain user
    if role == ADMIN and not config.is_org_email(email):
        return USER
    return role


def is_allow_listed_admin(email: Optional[str]) -> bool:
    return bool(email) and email.lower() in config.admin_emails()


def get_user_role(email: Optional[str]) -> str:
    if not email:
        return USER
    email = email.lower()
    role = _cached(email)
    if role:
        return role

    if email in config.admin_emails():
        role = ADMIN
    else:
        role = None
        if config.use_database_roles():
            persisted = _persisted_role(email)
            if persisted in ROLES:
                role = _honored(persisted, email)
        if role is None:
            if email in config.client_emails():
                role = CLIENT
            elif email in config.pilot_emails():
                role = PILOT
            else:
                role = USER

    _role_cache[email] = (time.time(), role)
    return role


def get_role_permissions(role: str) -> List[str]:
    return list(ROLE_PERMISSIONS.get(role, []))


def get_user_permissions(email: Optional[str]) -> List[str]:
    return get_role_permissions(get_user_role(email))


def has_permission(email: Optional[str], permission: str) -> bool:
    return permission in get_user_permissions(email)


def has_any_permission(email: Optional[str], permissions: List[str]) -> bool:
    granted = get_user_permissions(email)
    return any(p in granted for p in permissions)


def has_all_permissions(email: Optional[str], permissions: List[str]) -> bool:
    granted = get_user_permissions(email)
    return all(p in granted for p in permissions)


def get_navigation(role: str, email: str = "") -> List[dict]:
    nav = [dict(item) for item in NAVIGATION.get(role, NAVIGATION[USER])]
    if role == ADMIN and config.is_org_email(email):
        nav.insert(3, _nav("Users", "users", "FiUsers"))
    return nav


def session_role(user: dict) -> str:
    """Role of a signed-in user: allow-listed admins first, then the stored role."""
    email = user.get("email")
    if is_allow_listed_admin(email):
        return ADMIN
    stored = user.get("role")
    if stored in ROLES:
        return _honored(stored, email or "")
    return get_user_role(email)


def is_admin(email: Optional[str], user: Optional[dict] = None) -> bool:
    if not email:
        return False
    if get_user_role(email) == ADMIN:
        return True
    # Persisted admins count only on the organization's own domain
    if user is None:
        if db is None:
            return False
        user = db["user"].find_one({"email": email.lower()}, {"role": 1})
    return bool(user) and user.get("role") == ADMIN and config.is_org_email(email)


def check_assignable(role: Optional[str], email: str):
    if role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    if role == ADMIN and not config.is_org_email(email):
        raise AuthorizationError(
            f"Admin role can only be assigned to @{config.org_email_domain()} email addresses"
        )


def history_entry(role: str, changed_by: str, reason: str, invitation_id: Optional[str] = None) -> dict:
    entry = RoleChange(role=role, changed_by=changed_by, changed_at=utcnow(), reason=reason, invitation_id=invitation_id)
    return entry.model_dump(exclude_none=True)


def change_role(user_id: str, new_role: Optional[str], changed_by: str, reason: Optional[str] = None) -> dict:
    ensure_db()
    _id = oid(user_id)
    user = db["user"].find_one({"_id": _id})
    if not user:
        raise NotFoundError("User not found")
    check_assignable(new_role, user["email"])
    if user.get("role") == new_role:
        raise ValidationError(f"User already has role {new_role}")
    try:
        db["user"].update_one(
            {"_id": _id},
            {
                "$set": {"role": new_role, "updated_at": utcnow()},
                "$push": {"role_history": history_entry(new_role, changed_by, reason or "Role updated by admin")},
            },
        )
    except PyMongoError:
        logger.exception("Role update failed")
        raise PersistenceError("Failed to update role")
    invalidate(user["email"])
    logger.info(f"Role of {user['email']} changed from {user.get('role')} to {new_role} by {changed_by}")
    return with_id(db["user"].find_one({"_id": _id}, {"password_hash": 0}))


def get_role_history(user_id: str) -> dict:
    ensure_db()
    user = db["user"].find_one({"_id": oid(user_id)}, {"email": 1, "role": 1, "role_history": 1})
    if not user:
        raise NotFoundError("User not found")
    history = sorted(user.get("role_history", []), key=lambda h: h.get("changed_at"), reverse=True)
    return {"email": user["email"], "current_role": user.get("role"), "role_history": history}
