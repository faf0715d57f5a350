"""
Invitation lifecycle: issue, resend, validate, cancel and accept.

An invitation pre-assigns a role and access flag to an email before that
person has signed in. There is at most one pending invitation per email;
issuing again refreshes that record in place.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

import emails
import roles
from bookings import is_valid_email
from config import INVITATION_TTL_DAYS
from database import create_document, db, ensure_db, oid, utcnow, with_id
from errors import NotFoundError, PersistenceError, ValidationError
from schemas import Invitation, InvitationRequest

logger = logging.getLogger(__name__)


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def public_view(invitation: dict) -> dict:
    doc = dict(invitation)
    doc.pop("token", None)
    if "_id" in doc:
        with_id(doc)
    return doc


def issue_invitation(payload: InvitationRequest, invited_by: str) -> dict:
    ensure_db()
    if not payload.name or not payload.email:
        raise ValidationError("Name and email are required")
    email = payload.email.strip().lower()
    if not is_valid_email(email):
        raise ValidationError("Please provide a valid email address", title="Invalid email")
    role = payload.role or roles.USER
    roles.check_assignable(role, email)

    now = utcnow()
    fields = {
        "name": payload.name.strip(),
        "company": payload.company,
        "phone": payload.phone,
        "role": role,
        "has_access": bool(payload.has_access),
        "invited_by": invited_by,
        "token": generate_token(),
        "invited_at": now,
        "expires_at": now + timedelta(days=INVITATION_TTL_DAYS),
    }

    try:
        existing = db["invitation"].find_one({"email": email, "status": "pending"})
        if existing:
            db["invitation"].update_one({"_id": existing["_id"]}, {"$set": dict(fields, updated_at=now)})
            invitation_id = existing["_id"]
            logger.info(f"Pending invitation for {email} refreshed by {invited_by}")
        else:
            invitation_id = oid(create_document("invitation", Invitation(email=email, **fields)))
            logger.info(f"Invitation issued to {email} as {role} by {invited_by}")
        invitation = db["invitation"].find_one({"_id": invitation_id})
    except PyMongoError:
        logger.exception("Invitation write failed")
        raise PersistenceError("Failed to process invitation")

    email_sent = emails.send_invitation(invitation)
    return {
        "invitation": public_view(invitation),
        "updated": existing is not None,
        "email_sent": email_sent,
    }


def resend_invitation(invitation_id: str, resent_by: str) -> dict:
    ensure_db()
    _id = oid(invitation_id)
    invitation = db["invitation"].find_one({"_id": _id})
    if not invitation:
        raise NotFoundError("Invitation not found")
    if invitation.get("status") != "pending":
        raise ValidationError("Only pending invitations can be resent")

    now = utcnow()
    db["invitation"].update_one(
        {"_id": _id},
        {"$set": {
            "token": generate_token(),
            "invited_at": now,
            "expires_at": now + timedelta(days=INVITATION_TTL_DAYS),
            "updated_at": now,
        }},
    )
    invitation = db["invitation"].find_one({"_id": _id})
    email_sent = emails.send_invitation(invitation)
    logger.info(f"Invitation {invitation_id} resent by {resent_by}")
    return {"invitation": public_view(invitation), "email_sent": email_sent}


def validate_invitation(token: Optional[str]) -> dict:
    ensure_db()
    if not token:
        raise ValidationError("Invitation token is required")
    invitation = db["invitation"].find_one({
        "token": token,
        "status": "pending",
        "expires_at": {"$gt": utcnow()},
    })
    # Expired and unknown tokens get the same answer
    if not invitation:
        raise NotFoundError("Invalid or expired invitation")
    return {
        "email": invitation["email"],
        "name": invitation.get("name"),
        "company": invitation.get("company"),
        "role": invitation["role"],
        "role_description": roles.ROLE_DESCRIPTIONS.get(invitation["role"]),
        "has_access": invitation.get("has_access", False),
        "invited_by": invitation.get("invited_by"),
        "expires_at": invitation["expires_at"],
    }


def cancel_invitation(invitation_id: str, cancelled_by: str) -> dict:
    ensure_db()
    _id = oid(invitation_id)
    invitation = db["invitation"].find_one({"_id": _id})
    if not invitation:
        raise NotFoundError("Invitation not found")
    db["invitation"].delete_one({"_id": _id})
    logger.info(f"Invitation {invitation_id} for {invitation['email']} cancelled by {cancelled_by}")
    return public_view(invitation)


def find_pending(email: str) -> Optional[dict]:
    return db["invitation"].find_one(
        {"email": email.lower(), "status": "pending", "expires_at": {"$gt": utcnow()}},
        sort=[("invited_at", DESCENDING)],
    )


def accept_invitation(user: dict, new_user: bool = False) -> Optional[dict]:
    """Fold the pending invitation for `user`'s email into the user record.

    The user is written first and the invitation is flipped afterwards with a
    conditional update. The role-history entry carries the invitation id, so
    a repeated call after a failure between the two writes completes the
    acceptance without a second history entry.
    Returns the updated user, or None when no live invitation exists.
    """
    invitation = find_pending(user["email"])
    if not invitation:
        return None
    invitation_id = str(invitation["_id"])
    now = utcnow()

    fields = {"role": invitation["role"], "has_access": invitation.get("has_access", False), "updated_at": now}
    for key in ("company", "phone"):
        if invitation.get(key):
            fields[key] = invitation[key]
    if invitation.get("name") and (new_user or not user.get("name")):
        fields["name"] = invitation["name"]

    change = {"$set": fields}
    recorded = any(h.get("invitation_id") == invitation_id for h in user.get("role_history", []))
    if not recorded:
        reason = "Initial role assignment from invitation" if new_user else "Role updated from invitation"
        change["$push"] = {
            "role_history": roles.history_entry(invitation["role"], invitation["invited_by"], reason, invitation_id),
            "access_history": {
                "has_access": fields["has_access"],
                "changed_by": invitation["invited_by"],
                "changed_at": now,
                "reason": "Access set by invitation",
                "action": "created" if new_user else ("activated" if fields["has_access"] else "deactivated"),
            },
        }

    db["user"].update_one({"_id": user["_id"]}, change)
    db["invitation"].update_one(
        {"_id": invitation["_id"], "status": "pending"},
        {"$set": {"status": "accepted", "accepted_at": now, "updated_at": now}},
    )
    roles.invalidate(user["email"])
    logger.info(f"Invitation {invitation_id} accepted by {user['email']} (role {invitation['role']})")
    return db["user"].find_one({"_id": user["_id"]})
