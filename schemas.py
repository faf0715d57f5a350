"""
Database Schemas for SleepySquid Drones - Bookings, Roles & Invitations

Each Pydantic model corresponds to a MongoDB collection (class name lowercased).
Request/response helpers live at the bottom of the file.
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, Literal, List
from datetime import datetime

Role = Literal["admin", "client", "pilot", "user"]
BookingStatus = Literal["pending", "confirmed", "in-progress", "completed", "cancelled"]
BookingSource = Literal["customer", "zeitview", "manual"]
ServiceType = Literal[
    "aerial-photography",
    "drone-videography",
    "mapping-surveying",
    "real-estate",
    "inspection",
    "event-coverage",
    "custom",
]
PackageType = Literal["basic", "standard", "premium"]

BOOKING_STATUSES = ["pending", "confirmed", "in-progress", "completed", "cancelled"]
SERVICES = [
    "aerial-photography",
    "drone-videography",
    "mapping-surveying",
    "real-estate",
    "inspection",
    "event-coverage",
    "custom",
]
PACKAGES = ["basic", "standard", "premium"]


# Embedded documents
class Coordinates(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class RoleChange(BaseModel):
    role: Role
    changed_by: str
    changed_at: datetime
    reason: Optional[str] = None
    invitation_id: Optional[str] = None


class AccessChange(BaseModel):
    has_access: bool
    changed_by: str
    changed_at: datetime
    reason: Optional[str] = None
    action: Literal["activated", "deactivated", "created"]


class StatusChange(BaseModel):
    status_from: Optional[str] = Field(None, alias="from")
    status_to: str = Field(..., alias="to")
    changed_by: str
    changed_at: datetime


class EmailVerification(BaseModel):
    verified: bool = False
    token: Optional[str] = None
    expires: Optional[datetime] = None


class PendingEmailChange(BaseModel):
    email: str
    token: str
    expires: datetime


class PasswordReset(BaseModel):
    token: str
    expires: datetime
    requested_at: datetime


class Preferences(BaseModel):
    theme: Literal["light", "dark", "auto"] = "light"
    language: Literal["en", "es", "fr", "de"] = "en"
    timezone: str = "UTC"
    date_format: Literal["MM/DD/YYYY", "DD/MM/YYYY", "YYYY-MM-DD"] = "MM/DD/YYYY"
    currency: Literal["USD", "EUR", "GBP", "CAD"] = "USD"


class NotificationSettings(BaseModel):
    email_notifications: bool = True
    push_notifications: bool = True
    booking_updates: bool = True
    booking_confirmations: bool = True
    status_updates: bool = True
    marketing_emails: bool = False
    weekly_reports: bool = True
    security_alerts: bool = True


# Collections
class User(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None
    role: Role = "client"
    has_access: bool = False
    password_hash: Optional[str] = None
    email_verification: EmailVerification = Field(default_factory=EmailVerification)
    pending_email_change: Optional[PendingEmailChange] = None
    password_reset: Optional[PasswordReset] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    preferences: Preferences = Field(default_factory=Preferences)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    role_history: List[RoleChange] = Field(default_factory=list)
    access_history: List[AccessChange] = Field(default_factory=list)


class Account(BaseModel):
    user_id: str = Field(..., description="Reference to user _id as string")
    provider: str
    provider_account_id: str
    type: str = "oauth"


class Booking(BaseModel):
    source: BookingSource = "customer"
    mission_id: Optional[str] = Field(None, pattern=r"^DBM\d+$")
    service: ServiceType
    package: Optional[PackageType] = None
    duration: Optional[str] = None
    date: datetime
    location: str = Field(..., max_length=200)
    details: str = Field("", max_length=1000)
    name: str = Field(..., max_length=100)
    email: str
    phone: str
    estimated_price: Optional[float] = Field(None, ge=0)
    final_price: Optional[float] = Field(None, ge=0)
    payout: Optional[float] = Field(None, ge=0)
    travel_distance: Optional[float] = Field(None, ge=0)
    travel_time: Optional[float] = Field(None, ge=0)
    coordinates: Optional[Coordinates] = None
    accepted_at: Optional[datetime] = None
    status: BookingStatus = "pending"
    admin_notes: str = Field("", max_length=500)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_by: Optional[str] = None
    status_history: List[StatusChange] = Field(default_factory=list)


class Invitation(BaseModel):
    email: str
    name: str
    company: Optional[str] = None
    phone: Optional[str] = None
    role: Role = "user"
    has_access: bool = False
    invited_by: str
    token: str
    status: Literal["pending", "accepted"] = "pending"
    invited_at: datetime
    expires_at: datetime
    accepted_at: Optional[datetime] = None


class Promo(BaseModel):
    name: str
    description: Optional[str] = None
    discount_percentage: float = Field(..., ge=1, le=100)
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    created_by: str


# Response helpers
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ExternalProfile(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None
    provider: str = "google"
    provider_account_id: str


class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class TokenRequest(BaseModel):
    token: Optional[str] = None


class EmailRequest(BaseModel):
    email: Optional[str] = None


class ResetPasswordRequest(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


class EmailChangeRequest(BaseModel):
    new_email: Optional[str] = None


# Booking submission is loosely typed on purpose: the booking service applies
# sanitization first and reports specific messages for every rule.
class BookingRequest(BaseModel):
    service: Optional[str] = None
    package: Optional[str] = None
    date: Optional[datetime] = None
    location: Optional[str] = None
    duration: Optional[str] = None
    details: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class MissionRequest(BaseModel):
    source: Optional[str] = None
    mission_id: Optional[str] = None
    service: Optional[str] = None
    package: Optional[str] = None
    date: Optional[datetime] = None
    location: Optional[str] = None
    details: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    payout: Optional[float] = None
    travel_distance: Optional[float] = None
    travel_time: Optional[float] = None
    coordinates: Optional[Coordinates] = None
    accepted_at: Optional[datetime] = None
    status: Optional[str] = None


class BookingUpdate(BaseModel):
    status: Optional[str] = None
    estimated_price: Optional[float] = None
    final_price: Optional[float] = None
    admin_notes: Optional[str] = None


class InvitationRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None
    has_access: bool = False


class UserCreateRequest(InvitationRequest):
    pass


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    has_access: Optional[bool] = None
    preferences: Optional[Preferences] = None
    notifications: Optional[NotificationSettings] = None


class RoleChangeRequest(BaseModel):
    role: Optional[str] = None
    reason: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)
    company: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=100)
    website: Optional[str] = Field(None, max_length=200)


class PromoCreateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_percentage: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True


class PromoUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    discount_percentage: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class ContactRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    recaptcha_token: Optional[str] = None
