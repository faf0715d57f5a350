import os
from typing import List

# Security Config
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "1440"))

# Links in outgoing emails
APP_NAME = os.getenv("APP_NAME", "SleepySquid Drones")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:3000")

# SMTP delivery
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))

# Invitations and verification tokens
INVITATION_TTL_DAYS = 7
EMAIL_VERIFICATION_TTL_HOURS = 24
PASSWORD_RESET_TTL_HOURS = 1
EMAIL_CHANGE_TTL_HOURS = 24

# Customers must book at least this far ahead
BOOKING_MIN_ADVANCE_DAYS = 7

RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"


def _email_list(var: str) -> List[str]:
    raw = os.getenv(var, "")
    return [e.strip().lower() for e in raw.split(",") if e.strip()]


# Allow-lists are re-read on every call so a changed environment is picked up
# once the role cache is cleared.
def admin_emails() -> List[str]:
    return _email_list("ADMIN_EMAILS")


def client_emails() -> List[str]:
    return _email_list("CLIENT_EMAILS")


def pilot_emails() -> List[str]:
    return _email_list("PILOT_EMAILS")


def use_database_roles() -> bool:
    return os.getenv("USE_DATABASE_ROLES", "false").lower() == "true"


def role_cache_ttl() -> int:
    return int(os.getenv("ROLE_CACHE_TTL", "300"))


def org_email_domain() -> str:
    return os.getenv("ORG_EMAIL_DOMAIN", "sleepysquid.com").lower().lstrip("@")


def is_org_email(email: str) -> bool:
    return bool(email) and email.lower().endswith("@" + org_email_domain())


def support_email() -> str:
    return os.getenv("SUPPORT_EMAIL", "support@" + org_email_domain())


def oauth_callback_secret() -> str:
    return os.getenv("OAUTH_CALLBACK_SECRET", "")


def recaptcha_secret() -> str:
    return os.getenv("RECAPTCHA_SECRET_KEY", "")
