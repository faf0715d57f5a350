import logging
import os
import secrets
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

import accounts
import analytics
import bookings
import captcha
import emails
import invitations
import promos
import reports
import roles
from config import APP_NAME, oauth_callback_secret
from database import db, ensure_indexes
from errors import (
    ApiError,
    AuthenticationError,
    UnknownError,
    ValidationError,
    api_error_handler,
    request_validation_handler,
    unhandled_error_handler,
)
from rate_limit import (
    admin_limiter,
    booking_limiter,
    client_ip,
    contact_limiter,
    forgot_password_limiter,
    login_limiter,
    reset_limiter,
    signup_limiter,
)
from schemas import (
    BookingRequest,
    BookingUpdate,
    ContactRequest,
    EmailChangeRequest,
    EmailRequest,
    ExternalProfile,
    InvitationRequest,
    LoginRequest,
    MissionRequest,
    NotificationSettings,
    Preferences,
    ProfileUpdate,
    PromoCreateRequest,
    PromoUpdateRequest,
    ResetPasswordRequest,
    RoleChangeRequest,
    SignupRequest,
    Token,
    TokenRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from security import get_current_user, require_admin, require_org_admin

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"{APP_NAME} - Bookings, Roles & Invitations API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ApiError, api_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

admin_only = [Depends(admin_limiter)]


@app.on_event("startup")
def startup():
    ensure_indexes()
    accounts.ensure_bootstrap_admin()


# -------- Auth --------
@app.post("/auth/login", response_model=Token, dependencies=[Depends(login_limiter)])
def login(payload: LoginRequest):
    return accounts.login(payload)


@app.post("/auth/oauth/callback")
def oauth_callback(profile: ExternalProfile, x_callback_secret: Optional[str] = Header(None)):
    expected = oauth_callback_secret()
    if not expected:
        logger.warning("OAUTH_CALLBACK_SECRET not configured, refusing sign-in callback")
        raise AuthenticationError("Sign-in callback not configured")
    if not x_callback_secret or not secrets.compare_digest(x_callback_secret, expected):
        raise AuthenticationError("Invalid callback secret")
    return accounts.oauth_sign_in(profile)


@app.get("/auth/me")
def auth_me(current=Depends(get_current_user)):
    return accounts.me(current)


@app.post("/auth/check-access")
def auth_check_access(payload: EmailRequest):
    return accounts.check_access(payload)


@app.post("/auth/signup", status_code=201, dependencies=[Depends(signup_limiter)])
def signup(payload: SignupRequest):
    return accounts.signup(payload)


@app.post("/auth/verify-email")
def verify_email(payload: TokenRequest):
    return accounts.verify_email(payload.token)


@app.post("/auth/forgot-password", dependencies=[Depends(forgot_password_limiter)])
def forgot_password(payload: EmailRequest):
    return accounts.forgot_password(payload)


@app.get("/auth/validate-reset-token")
def validate_reset_token(token: Optional[str] = None):
    return accounts.validate_reset_token(token)


@app.post("/auth/reset-password", dependencies=[Depends(reset_limiter)])
def reset_password(payload: ResetPasswordRequest):
    return accounts.reset_password(payload)


# -------- Bookings --------
@app.post("/bookings", status_code=201, dependencies=[Depends(booking_limiter)])
def create_booking(payload: BookingRequest, request: Request):
    return bookings.create_booking(
        payload,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


@app.get("/admin/bookings", dependencies=admin_only)
def list_bookings(
    status: Optional[str] = None,
    service: Optional[str] = None,
    source: Optional[str] = None,
    email: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
    sort: str = "-created_at",
    current=Depends(require_admin),
):
    query = bookings.build_filter(status, service, source, email, date_from, date_to)
    result = bookings.list_bookings(query, page=page, limit=limit, sort=sort)
    result["filters"] = {
        "status": status, "service": service, "source": source, "email": email,
        "date_from": date_from, "date_to": date_to,
    }
    return result


@app.get("/admin/bookings/export", dependencies=admin_only)
def export_bookings(
    status: Optional[str] = None,
    service: Optional[str] = None,
    source: Optional[str] = None,
    email: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    current=Depends(require_admin),
):
    query = bookings.build_filter(status, service, source, email, date_from, date_to)
    bio = reports.build_bookings_workbook(query)
    filename = "bookings_report.xlsx"
    return StreamingResponse(bio, media_type=reports.XLSX_MEDIA_TYPE, headers={"Content-Disposition": f"attachment; filename={filename}"})


@app.patch("/admin/bookings/{booking_id}", dependencies=admin_only)
def update_booking(booking_id: str, payload: BookingUpdate, current=Depends(require_admin)):
    return bookings.update_booking(booking_id, payload, changed_by=current["email"])


@app.delete("/admin/bookings/{booking_id}", dependencies=admin_only)
def delete_booking(booking_id: str, current=Depends(require_admin)):
    deleted = bookings.delete_booking(booking_id, deleted_by=current["email"])
    return {"success": True, "message": "Booking deleted successfully", "deleted_booking": deleted}


@app.post("/admin/missions", status_code=201, dependencies=admin_only)
def create_mission(payload: MissionRequest, current=Depends(require_admin)):
    return bookings.create_mission(payload, created_by=current["email"])


# -------- Analytics --------
@app.get("/admin/analytics", dependencies=admin_only)
def booking_analytics(current=Depends(require_admin)):
    return analytics.booking_analytics()


@app.get("/admin/missions/analytics", dependencies=admin_only)
def mission_analytics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    period: str = "30d",
    source: Optional[str] = None,
    status: Optional[str] = None,
    current=Depends(require_admin),
):
    return analytics.mission_analytics(start_date, end_date, period, source, status)


# -------- Invitations --------
@app.post("/admin/users/invite", dependencies=admin_only)
def invite_user(payload: InvitationRequest, current=Depends(require_admin)):
    return invitations.issue_invitation(payload, invited_by=current["email"])


@app.post("/admin/invitations/{invitation_id}/resend", dependencies=admin_only)
def resend_invitation(invitation_id: str, current=Depends(require_admin)):
    return invitations.resend_invitation(invitation_id, resent_by=current["email"])


@app.get("/admin/invitations/validate")
def validate_invitation(token: Optional[str] = None):
    return {"valid": True, "invitation": invitations.validate_invitation(token)}


@app.delete("/admin/invitations/{invitation_id}", dependencies=admin_only)
def cancel_invitation(invitation_id: str, current=Depends(require_admin)):
    cancelled = invitations.cancel_invitation(invitation_id, cancelled_by=current["email"])
    return {"success": True, "message": "Invitation cancelled", "invitation": cancelled}


# -------- Users --------
@app.get("/admin/users", dependencies=admin_only)
def list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    has_access: Optional[bool] = None,
    page: int = 1,
    limit: int = 50,
    current=Depends(require_org_admin),
):
    return accounts.list_users(search, role, has_access, page, limit)


@app.post("/admin/users", status_code=201, dependencies=admin_only)
def create_user(payload: UserCreateRequest, current=Depends(require_org_admin)):
    return accounts.create_user(payload, created_by=current["email"])


@app.post("/admin/users/cleanup-duplicates", dependencies=admin_only)
def cleanup_duplicates(payload: EmailRequest, current=Depends(require_org_admin)):
    return accounts.cleanup_duplicates(payload, performed_by=current["email"])


@app.get("/admin/users/{user_id}", dependencies=admin_only)
def get_user(user_id: str, current=Depends(require_org_admin)):
    return accounts.get_user(user_id)


@app.patch("/admin/users/{user_id}", dependencies=admin_only)
def update_user(user_id: str, payload: UserUpdateRequest, current=Depends(require_org_admin)):
    return accounts.update_user(user_id, payload, current)


@app.delete("/admin/users/{user_id}", dependencies=admin_only)
def delete_user(user_id: str, current=Depends(require_org_admin)):
    deleted = accounts.delete_user(user_id, current)
    return {"success": True, "message": "User deleted successfully", "user": deleted}


@app.patch("/admin/users/{user_id}/role", dependencies=admin_only)
def change_user_role(user_id: str, payload: RoleChangeRequest, current=Depends(require_org_admin)):
    return roles.change_role(user_id, payload.role, changed_by=current["email"], reason=payload.reason)


@app.get("/admin/users/{user_id}/role-history", dependencies=admin_only)
def role_history(user_id: str, current=Depends(require_org_admin)):
    return roles.get_role_history(user_id)


# -------- Promos --------
@app.get("/admin/promos", dependencies=admin_only)
def list_promos(status: Optional[str] = None, page: int = 1, limit: int = 20, current=Depends(require_admin)):
    return promos.list_promos(status, page, limit)


@app.post("/admin/promos", status_code=201, dependencies=admin_only)
def create_promo(payload: PromoCreateRequest, current=Depends(require_admin)):
    return promos.create_promo(payload, created_by=current["email"])


@app.get("/admin/promos/{promo_id}", dependencies=admin_only)
def get_promo(promo_id: str, current=Depends(require_admin)):
    return promos.get_promo(promo_id)


@app.patch("/admin/promos/{promo_id}", dependencies=admin_only)
def update_promo(promo_id: str, payload: PromoUpdateRequest, current=Depends(require_admin)):
    return promos.update_promo(promo_id, payload, updated_by=current["email"])


@app.delete("/admin/promos/{promo_id}", dependencies=admin_only)
def delete_promo(promo_id: str, current=Depends(require_admin)):
    deleted = promos.delete_promo(promo_id, deleted_by=current["email"])
    return {"success": True, "message": "Promo deleted successfully", "promo": deleted}


@app.get("/promo/active")
def active_promo():
    return promos.active_promo_summary()


# -------- Current user --------
@app.get("/user/bookings")
def my_bookings(status: Optional[str] = None, page: int = 1, limit: int = 10, current=Depends(get_current_user)):
    return bookings.user_bookings(current["email"], status, page, limit)


@app.get("/user/settings")
def get_settings(current=Depends(get_current_user)):
    return accounts.get_settings(current)


@app.patch("/user/settings/profile")
def update_profile(payload: ProfileUpdate, current=Depends(get_current_user)):
    return accounts.update_profile(current, payload)


@app.patch("/user/settings/preferences")
def update_preferences(payload: Preferences, current=Depends(get_current_user)):
    return accounts.update_preferences(current, payload)


@app.patch("/user/settings/notifications")
def update_notifications(payload: NotificationSettings, current=Depends(get_current_user)):
    return accounts.update_notifications(current, payload)


@app.post("/user/email/send-verification")
def send_verification(current=Depends(get_current_user)):
    return accounts.resend_verification(current)


@app.post("/user/email/change")
def change_email(payload: EmailChangeRequest, current=Depends(get_current_user)):
    return accounts.request_email_change(current, payload)


@app.post("/user/email/verify-change")
def verify_email_change(payload: TokenRequest):
    return accounts.verify_email_change(payload.token)


# -------- Contact --------
@app.post("/contact", dependencies=[Depends(contact_limiter)])
def contact(payload: ContactRequest, request: Request):
    captcha.require_captcha(payload.recaptcha_token, client_ip(request))
    if not payload.name or not payload.email or not payload.subject or not payload.message:
        raise ValidationError("Please fill in all required fields", title="Missing required fields")
    name = bookings.sanitize(payload.name)
    email = bookings.sanitize(payload.email).lower()
    subject = bookings.sanitize(payload.subject)
    message = bookings.sanitize(payload.message)
    if not bookings.is_valid_email(email):
        raise ValidationError("Please provide a valid email address", title="Invalid email")
    if len(name) > 100:
        raise ValidationError("Name cannot exceed 100 characters")
    if len(subject) > 200:
        raise ValidationError("Subject cannot exceed 200 characters")
    if len(message) > 2000:
        raise ValidationError("Message cannot exceed 2000 characters")
    try:
        emails.send_contact_message(name, email, subject, message)
    except Exception:
        logger.exception("Contact form delivery failed")
        raise UnknownError("Failed to send your message. Please try again later.")
    logger.info(f"Contact message from {email} forwarded to support")
    return {"success": True, "message": "Thank you for your message! We will get back to you soon."}


# -------- Health --------
@app.get("/")
def root():
    return {"message": f"{APP_NAME} API running"}


@app.get("/test")
def test():
    status = {
        "backend": "running",
        "database": "connected" if db is not None else "not_configured",
    }
    if db is not None:
        try:
            status["collections"] = db.list_collection_names()
        except Exception as e:
            status["error"] = str(e)
    return status


@app.get("/health/database")
def database_health():
    if db is None:
        raise UnknownError("Database not configured")
    try:
        db.command("ping")
    except Exception:
        logger.exception("Database ping failed")
        raise UnknownError("Database connection failed")
    return {"status": "ok", "database": "connected"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
