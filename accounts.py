"""
User accounts: sign-in materialization, self-service credential flows,
admin user management and personal settings.
"""

import logging
import os
import re
import secrets
from datetime import timedelta
from typing import List, Optional

from pydantic import ValidationError as SchemaError
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

import emails
import invitations
import roles
from bookings import is_valid_email, sanitize
from config import (
    EMAIL_CHANGE_TTL_HOURS,
    EMAIL_VERIFICATION_TTL_HOURS,
    PASSWORD_RESET_TTL_HOURS,
    is_org_email,
)
from database import create_document, db, ensure_db, oid, paginate, utcnow, with_id
from errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from schemas import (
    AccessChange,
    Account,
    EmailChangeRequest,
    EmailRequest,
    ExternalProfile,
    LoginRequest,
    NotificationSettings,
    Preferences,
    ProfileUpdate,
    ResetPasswordRequest,
    SignupRequest,
    User,
    UserCreateRequest,
    UserUpdateRequest,
)
from security import create_token, hash_password, verify_password

logger = logging.getLogger(__name__)

COMMON_PASSWORDS = [
    "password", "123456", "123456789", "qwerty", "abc123",
    "password123", "admin", "letmein", "welcome", "monkey",
]
SPECIAL_CHAR_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")

GENERIC_RESET_MESSAGE = (
    "If an account exists with this email, you will receive password reset instructions shortly."
)
RESET_RESEND_INTERVAL = timedelta(minutes=5)

PRIVATE_FIELDS = ("password_hash", "password_reset")


# -------- Helpers --------
def public_user(user: Optional[dict]) -> Optional[dict]:
    if not user:
        return user
    doc = {k: v for k, v in user.items() if k not in PRIVATE_FIELDS}
    if doc.get("email_verification"):
        doc["email_verification"] = {"verified": doc["email_verification"].get("verified", False)}
    if doc.get("pending_email_change"):
        doc["pending_email_change"] = {
            "email": doc["pending_email_change"].get("email"),
            "expires": doc["pending_email_change"].get("expires"),
        }
    return with_id(doc)


def user_summary(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "email": user["email"],
        "name": user.get("name"),
        "image": user.get("image"),
        "role": roles.session_role(user),
        "has_access": user.get("has_access", False),
        "email_verified": user.get("email_verification", {}).get("verified", False),
    }


def password_errors(password: Optional[str]) -> List[str]:
    if not password:
        return ["Password is required"]
    errors = []
    if len(password) < 8:
        errors.append("Password must be at least 8 characters long")
    if len(password) > 128:
        errors.append("Password must be less than 128 characters long")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHAR_RE.search(password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common, please choose a stronger password")
    return errors


def check_password(password: Optional[str]):
    errors = password_errors(password)
    if errors:
        raise ValidationError(", ".join(errors), title="Invalid password")


def _clean_email(value: Optional[str]) -> str:
    email = (sanitize(value) or "").lower()
    if not email:
        raise ValidationError("Email is required")
    if not is_valid_email(email):
        raise ValidationError("Please enter a valid email address", title="Invalid email")
    return email


def new_user_doc(email: str, **fields) -> dict:
    try:
        return User(email=email, **fields).model_dump()
    except SchemaError:
        raise ValidationError("Please provide a valid email address", title="Invalid email")


def access_entry(has_access: bool, changed_by: str, reason: str, action: str) -> dict:
    entry = AccessChange(has_access=has_access, changed_by=changed_by, changed_at=utcnow(), reason=reason, action=action)
    return entry.model_dump()


def _check_admin_email(user: dict, email: str):
    if user.get("role") == roles.ADMIN and not is_org_email(email):
        raise AuthorizationError("Admin users must keep an organization email address")


def _load_user(user_id: str) -> dict:
    ensure_db()
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFoundError("User not found")
    return user


# -------- Sign-in --------
def login(payload: LoginRequest) -> dict:
    ensure_db()
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash")):
        raise AuthenticationError("Invalid credentials")
    if not user.get("email_verification", {}).get("verified", False):
        raise AuthorizationError("Please verify your email before signing in")
    token = create_token(str(user["_id"]), roles.session_role(user), user["email"])
    logger.info(f"Credential sign-in for {user['email']}")
    return {"access_token": token, "token_type": "bearer"}


def oauth_sign_in(profile: ExternalProfile) -> dict:
    """Materialize the signed-in person as a user and accept any pending invitation."""
    ensure_db()
    email = profile.email.lower()
    user = db["user"].find_one({"email": email}, sort=[("created_at", DESCENDING)])
    new_user = user is None
    try:
        if new_user:
            doc = new_user_doc(email, name=profile.name, image=profile.image, role=roles.CLIENT)
            doc["email_verification"] = {"verified": True, "token": None, "expires": None}
            user_id = create_document("user", doc)
            logger.info(f"User {email} created from {profile.provider} sign-in")
        else:
            user_id = str(user["_id"])
            sets = {"email_verification.verified": True, "updated_at": utcnow()}
            if profile.name and not user.get("name"):
                sets["name"] = profile.name
            if profile.image:
                sets["image"] = profile.image
            db["user"].update_one({"_id": user["_id"]}, {"$set": sets})

        account = Account(user_id=user_id, provider=profile.provider, provider_account_id=profile.provider_account_id)
        db["account"].update_one(
            account.model_dump(include={"provider", "provider_account_id"}),
            {
                "$setOnInsert": dict(account.model_dump(include={"user_id", "type"}), created_at=utcnow()),
                "$set": {"updated_at": utcnow()},
            },
            upsert=True,
        )
        user = db["user"].find_one({"_id": oid(user_id)})
    except PyMongoError:
        logger.exception("Could not materialize user at sign-in")
        raise PersistenceError("Sign-in failed. Please try again.")

    accepted = None
    invitation_failed = False
    # A failed invitation side effect must not block the sign-in itself
    try:
        accepted = invitations.accept_invitation(user, new_user=new_user)
    except Exception:
        invitation_failed = True
        logger.exception(f"Invitation processing failed for {email}")

    if accepted:
        user = accepted
    elif new_user and not invitation_failed:
        db["user"].update_one(
            {"_id": user["_id"]},
            {
                "$set": {"has_access": True, "updated_at": utcnow()},
                "$push": {"access_history": access_entry(True, "system", "Auto-granted access for OAuth user", "created")},
            },
        )
        user = db["user"].find_one({"_id": user["_id"]})

    roles.invalidate(email)
    token = create_token(str(user["_id"]), roles.session_role(user), email)
    return {
        "access_token": token,
        "token_type": "bearer",
        "user": user_summary(user),
        "invitation_accepted": accepted is not None,
    }


def me(user: dict) -> dict:
    role = roles.session_role(user)
    return dict(
        user_summary(user),
        permissions=roles.get_role_permissions(role),
        navigation=roles.get_navigation(role, user["email"]),
        is_admin=roles.is_admin(user["email"], user),
    )


def check_access(payload: EmailRequest) -> dict:
    ensure_db()
    email = _clean_email(payload.email)
    user = db["user"].find_one({"email": email})
    if not user:
        raise NotFoundError("User not found")
    return {"email": email, "has_access": user.get("has_access", False), "role": roles.session_role(user)}


# -------- Self-service credentials --------
def signup(payload: SignupRequest) -> dict:
    ensure_db()
    if not payload.name or not payload.email or not payload.password:
        raise ValidationError("Name, email and password are required")
    email = _clean_email(payload.email)
    name = sanitize(payload.name)
    if len(name) > 100:
        raise ValidationError("Name cannot exceed 100 characters")
    check_password(payload.password)
    if db["user"].find_one({"email": email}):
        raise ConflictError("An account with this email already exists")

    token = secrets.token_urlsafe(32)
    doc = new_user_doc(email, name=name, role=roles.CLIENT, has_access=False,
                       password_hash=hash_password(payload.password))
    doc["email_verification"] = {
        "verified": False,
        "token": token,
        "expires": utcnow() + timedelta(hours=EMAIL_VERIFICATION_TTL_HOURS),
    }
    try:
        user_id = create_document("user", doc)
    except PyMongoError:
        logger.exception("Signup insert failed")
        raise PersistenceError("Failed to create account")
    logger.info(f"Account created for {email} via signup")

    email_sent = emails.send_verification(email, name, token)
    return {
        "success": True,
        "message": "Account created. Please check your email to verify your address.",
        "user": {"id": user_id, "email": email, "name": name},
        "email_sent": email_sent,
    }


def verify_email(token: Optional[str]) -> dict:
    ensure_db()
    if not token:
        raise ValidationError("Verification token is required")
    user = db["user"].find_one({
        "email_verification.token": token,
        "email_verification.expires": {"$gt": utcnow()},
    })
    if not user:
        raise ValidationError("Invalid or expired verification token")
    db["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {
                "email_verification": {"verified": True, "token": None, "expires": None},
                "has_access": True,
                "updated_at": utcnow(),
            },
            "$push": {"access_history": access_entry(True, "system", "Email verified", "activated")},
        },
    )
    roles.invalidate(user["email"])
    logger.info(f"Email verified for {user['email']}")
    return {"success": True, "message": "Email verified successfully", "email": user["email"]}


def resend_verification(user: dict) -> dict:
    if user.get("email_verification", {}).get("verified"):
        raise ValidationError("Email is already verified")
    token = secrets.token_urlsafe(32)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "email_verification": {
                "verified": False,
                "token": token,
                "expires": utcnow() + timedelta(hours=EMAIL_VERIFICATION_TTL_HOURS),
            },
            "updated_at": utcnow(),
        }},
    )
    return {"success": True, "email_sent": emails.send_verification(user["email"], user.get("name"), token)}


def forgot_password(payload: EmailRequest) -> dict:
    ensure_db()
    email = _clean_email(payload.email)
    user = db["user"].find_one({"email": email})
    # Same answer whether or not the account exists
    if user and user.get("password_hash"):
        now = utcnow()
        requested_at = (user.get("password_reset") or {}).get("requested_at")
        if requested_at and requested_at > now - RESET_RESEND_INTERVAL:
            logger.info(f"Password reset for {email} requested again within the resend interval")
        else:
            token = secrets.token_urlsafe(32)
            db["user"].update_one(
                {"_id": user["_id"]},
                {"$set": {
                    "password_reset": {
                        "token": token,
                        "expires": now + timedelta(hours=PASSWORD_RESET_TTL_HOURS),
                        "requested_at": now,
                    },
                    "updated_at": now,
                }},
            )
            emails.send_password_reset(email, user.get("name"), token)
    return {"message": GENERIC_RESET_MESSAGE}


def _user_for_reset_token(token: Optional[str]) -> dict:
    if not token:
        raise ValidationError("Reset token is required")
    user = db["user"].find_one({
        "password_reset.token": token,
        "password_reset.expires": {"$gt": utcnow()},
    })
    if not user:
        raise ValidationError("Invalid or expired reset token")
    return user


def validate_reset_token(token: Optional[str]) -> dict:
    ensure_db()
    user = _user_for_reset_token(token)
    return {"valid": True, "email": user["email"]}


def reset_password(payload: ResetPasswordRequest) -> dict:
    ensure_db()
    user = _user_for_reset_token(payload.token)
    check_password(payload.password)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.password), "password_reset": None, "updated_at": utcnow()}},
    )
    logger.info(f"Password reset completed for {user['email']}")
    return {"success": True, "message": "Password has been reset. You can now sign in."}


def request_email_change(user: dict, payload: EmailChangeRequest) -> dict:
    ensure_db()
    new_email = _clean_email(payload.new_email)
    if new_email == user["email"]:
        raise ValidationError("New email must be different from your current email")
    _check_admin_email(user, new_email)
    if db["user"].find_one({"email": new_email}):
        raise ConflictError("This email is already in use")
    pending = user.get("pending_email_change")
    if pending and pending.get("expires") and pending["expires"] > utcnow():
        raise ValidationError("An email change is already pending. Please check your inbox.")

    token = secrets.token_urlsafe(32)
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "pending_email_change": {
                "email": new_email,
                "token": token,
                "expires": utcnow() + timedelta(hours=EMAIL_CHANGE_TTL_HOURS),
            },
            "updated_at": utcnow(),
        }},
    )
    email_sent = emails.send_email_change(new_email, user.get("name"), token)
    return {"success": True, "pending_email": new_email, "email_sent": email_sent}


def verify_email_change(token: Optional[str]) -> dict:
    ensure_db()
    if not token:
        raise ValidationError("Verification token is required")
    user = db["user"].find_one({
        "pending_email_change.token": token,
        "pending_email_change.expires": {"$gt": utcnow()},
    })
    if not user:
        raise ValidationError("Invalid or expired verification token")
    new_email = user["pending_email_change"]["email"]
    _check_admin_email(user, new_email)
    if db["user"].find_one({"email": new_email, "_id": {"$ne": user["_id"]}}):
        raise ConflictError("This email is already in use")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "email": new_email,
            "email_verification": {"verified": True, "token": None, "expires": None},
            "pending_email_change": None,
            "updated_at": utcnow(),
        }},
    )
    roles.invalidate(user["email"])
    roles.invalidate(new_email)
    logger.info(f"Email changed from {user['email']} to {new_email}")
    return {"success": True, "email": new_email}


# -------- Admin user management --------
def _search_filter(search: Optional[str]) -> dict:
    if not search:
        return {}
    pattern = {"$regex": re.escape(search), "$options": "i"}
    return {"$or": [{"name": pattern}, {"email": pattern}, {"company": pattern}]}


def list_users(search: Optional[str] = None, role: Optional[str] = None, has_access: Optional[bool] = None,
               page: int = 1, limit: int = 50) -> dict:
    ensure_db()
    if page < 1 or limit < 1 or limit > 100:
        raise ValidationError("Page must be 1 or greater and limit between 1 and 100")
    user_filter = _search_filter(search)
    invitation_filter = dict(_search_filter(search), status="pending")
    if role:
        user_filter["role"] = role
        invitation_filter["role"] = role
    if has_access is not None:
        user_filter["has_access"] = has_access
        invitation_filter["has_access"] = has_access

    users = [dict(public_user(u), is_pending_invitation=False) for u in db["user"].find(user_filter)]
    pending = [
        dict(invitations.public_view(i), is_pending_invitation=True)
        for i in db["invitation"].find(invitation_filter)
    ]
    items = sorted(users + pending, key=lambda d: d.get("created_at") or d.get("invited_at"), reverse=True)
    start = (page - 1) * limit

    all_users = list(db["user"].find({}, {"role": 1, "has_access": 1}))
    all_pending = list(db["invitation"].find({"status": "pending"}, {"role": 1}))
    by_role = {r: 0 for r in roles.ROLES}
    for doc in all_users + all_pending:
        if doc.get("role") in by_role:
            by_role[doc["role"]] += 1
    stats = {
        "total": len(all_users) + len(all_pending),
        "users": len(all_users),
        "pending_invitations": len(all_pending),
        "with_access": sum(1 for u in all_users if u.get("has_access")),
        "without_access": sum(1 for u in all_users if not u.get("has_access")),
        "by_role": by_role,
    }
    return {"users": items[start:start + limit], "pagination": paginate(page, limit, len(items)), "stats": stats}


def create_user(payload: UserCreateRequest, created_by: str) -> dict:
    ensure_db()
    if not payload.name or not payload.email:
        raise ValidationError("Name and email are required")
    email = _clean_email(payload.email)
    role = payload.role or roles.USER
    roles.check_assignable(role, email)
    if db["user"].find_one({"email": email}):
        raise ConflictError("A user with this email already exists")

    doc = new_user_doc(
        email,
        name=sanitize(payload.name),
        company=payload.company,
        phone=payload.phone,
        role=role,
        has_access=bool(payload.has_access),
    )
    doc["role_history"] = [roles.history_entry(role, created_by, "Initial role assignment by admin")]
    doc["access_history"] = [access_entry(bool(payload.has_access), created_by, "Account created by admin", "created")]
    user_id = create_document("user", doc)
    roles.invalidate(email)
    logger.info(f"User {email} created as {role} by {created_by}")
    return public_user(db["user"].find_one({"_id": oid(user_id)}))


def get_user(user_id: str) -> dict:
    return public_user(_load_user(user_id))


def update_user(user_id: str, payload: UserUpdateRequest, current: dict) -> dict:
    user = _load_user(user_id)
    fields = payload.model_dump(exclude_unset=True)
    if not fields:
        raise ValidationError("At least one field must be provided for update")

    sets = {}
    for key in ("name", "company", "phone", "bio", "location", "website"):
        if key in fields:
            sets[key] = sanitize(fields[key])
    if "email" in fields:
        email = _clean_email(fields["email"])
        if email != user["email"]:
            if db["user"].find_one({"email": email, "_id": {"$ne": user["_id"]}}):
                raise ConflictError("A user with this email already exists")
            _check_admin_email(user, email)
            sets["email"] = email
    for key in ("preferences", "notifications"):
        if fields.get(key) is not None:
            sets[key] = fields[key]

    change = {}
    if "has_access" in fields and fields["has_access"] is not None and fields["has_access"] != user.get("has_access"):
        if user["_id"] == current["_id"]:
            raise AuthorizationError("You cannot change your own access")
        sets["has_access"] = fields["has_access"]
        action = "activated" if fields["has_access"] else "deactivated"
        change["$push"] = {
            "access_history": access_entry(fields["has_access"], current["email"], f"Access {action} by admin", action)
        }

    sets["updated_at"] = utcnow()
    change["$set"] = sets
    db["user"].update_one({"_id": user["_id"]}, change)
    roles.invalidate(user["email"])
    roles.invalidate(sets.get("email"))
    logger.info(f"User {user['email']} updated by {current['email']}: {sorted(k for k in sets if k != 'updated_at')}")
    return public_user(db["user"].find_one({"_id": user["_id"]}))


def delete_user(user_id: str, current: dict) -> dict:
    user = _load_user(user_id)
    if user["_id"] == current["_id"]:
        raise ValidationError("You cannot delete your own account")
    if roles.is_allow_listed_admin(user["email"]):
        raise AuthorizationError("Allow-listed administrators cannot be deleted")
    _purge_users([user])
    roles.invalidate(user["email"])
    logger.info(f"User {user['email']} deleted by {current['email']}")
    return {"id": str(user["_id"]), "email": user["email"], "name": user.get("name")}


def _purge_users(users: List[dict]):
    ids = [u["_id"] for u in users]
    str_ids = [str(i) for i in ids]
    db["user"].delete_many({"_id": {"$in": ids}})
    db["account"].delete_many({"user_id": {"$in": str_ids}})
    db["session"].delete_many({"user_id": {"$in": str_ids}})


def cleanup_duplicates(payload: EmailRequest, performed_by: str) -> dict:
    ensure_db()
    if not payload.email:
        raise ValidationError("Email is required for duplicate cleanup", title="Missing email")
    email = payload.email.strip().lower()
    users = list(db["user"].find({"email": email}).sort("created_at", 1))
    if len(users) < 2:
        raise ValidationError("No duplicate users found for this email", title="No duplicates found")

    invitation = db["invitation"].find_one({"email": email}, sort=[("invited_at", DESCENDING)])
    keep = None
    if invitation:
        keep = next((u for u in users if u.get("role") == invitation["role"]), None)
    if keep is None:
        keep = users[-1]
    remove = [u for u in users if u["_id"] != keep["_id"]]

    if invitation:
        sets = {
            "role": invitation["role"],
            "has_access": invitation.get("has_access", False),
            "company": invitation.get("company") or keep.get("company"),
            "phone": invitation.get("phone") or keep.get("phone"),
            "name": invitation.get("name") or keep.get("name"),
            "updated_at": utcnow(),
        }
        db["user"].update_one(
            {"_id": keep["_id"]},
            {
                "$set": sets,
                "$push": {"role_history": roles.history_entry(
                    invitation["role"], performed_by, "Cleanup: Applied invitation data to merged user",
                    str(invitation["_id"]),
                )},
            },
        )
        if invitation.get("status") != "accepted":
            db["invitation"].update_one(
                {"_id": invitation["_id"]},
                {"$set": {"status": "accepted", "accepted_at": utcnow(), "updated_at": utcnow()}},
            )

    _purge_users(remove)
    roles.invalidate(email)
    kept = db["user"].find_one({"_id": keep["_id"]})
    logger.info(f"Duplicate cleanup for {email} by {performed_by}: removed {len(remove)}")
    return {
        "email": email,
        "users_removed": len(remove),
        "user_kept": {
            "id": str(kept["_id"]),
            "name": kept.get("name"),
            "role": kept.get("role"),
            "has_access": kept.get("has_access", False),
        },
        "invitation_processed": invitation is not None,
    }


# -------- Settings --------
def get_settings(user: dict) -> dict:
    return {
        "profile": {k: user.get(k) for k in ("name", "email", "phone", "company", "bio", "location", "website", "image")},
        "preferences": Preferences(**(user.get("preferences") or {})).model_dump(),
        "notifications": NotificationSettings(**(user.get("notifications") or {})).model_dump(),
        "email_verified": user.get("email_verification", {}).get("verified", False),
        "pending_email_change": (user.get("pending_email_change") or {}).get("email"),
        "role": roles.session_role(user),
    }


def _set_nested(user: dict, prefix: str, values: dict) -> dict:
    if not values:
        raise ValidationError("At least one field must be provided for update")
    sets = {f"{prefix}.{k}": v for k, v in values.items()} if prefix else dict(values)
    sets["updated_at"] = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": sets})
    return get_settings(db["user"].find_one({"_id": user["_id"]}))


def update_profile(user: dict, payload: ProfileUpdate) -> dict:
    values = {k: sanitize(v) for k, v in payload.model_dump(exclude_unset=True).items()}
    return _set_nested(user, "", values)


def update_preferences(user: dict, payload: Preferences) -> dict:
    return _set_nested(user, "preferences", payload.model_dump(exclude_unset=True))


def update_notifications(user: dict, payload: NotificationSettings) -> dict:
    return _set_nested(user, "notifications", payload.model_dump(exclude_unset=True))


# -------- Startup --------
def ensure_bootstrap_admin():
    email = os.getenv("BOOTSTRAP_ADMIN_EMAIL")
    password = os.getenv("BOOTSTRAP_ADMIN_PASSWORD")
    if db is None or not email or not password:
        return
    email = email.lower()
    if db["user"].find_one({"email": email}):
        return
    doc = new_user_doc(email, name="Admin", role=roles.ADMIN, has_access=True, password_hash=hash_password(password))
    doc["email_verification"] = {"verified": True, "token": None, "expires": None}
    doc["role_history"] = [roles.history_entry(roles.ADMIN, "system", "Bootstrap administrator")]
    create_document("user", doc)
    logger.info(f"Bootstrap admin {email} created")
