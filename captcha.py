import logging
from typing import Optional

import requests

from config import RECAPTCHA_VERIFY_URL, recaptcha_secret
from errors import UnknownError, ValidationError

logger = logging.getLogger(__name__)

API_TIMEOUT = 10


def verify_captcha(token: Optional[str], remote_ip: Optional[str] = None) -> bool:
    """Ask the reCAPTCHA service whether `token` is valid."""
    secret = recaptcha_secret()
    if not secret:
        logger.warning("RECAPTCHA_SECRET_KEY not configured")
        raise UnknownError("reCAPTCHA verification is required but not configured on the server")
    data = {"secret": secret, "response": token}
    if remote_ip:
        data["remoteip"] = remote_ip
    try:
        response = requests.post(RECAPTCHA_VERIFY_URL, data=data, timeout=API_TIMEOUT)
        response.raise_for_status()
        return bool(response.json().get("success"))
    except requests.exceptions.RequestException as e:
        logger.error(f"reCAPTCHA API error: {str(e)}")
        raise UnknownError("Unable to verify reCAPTCHA. Please try again.")
    except ValueError:
        logger.error("reCAPTCHA API returned a non-JSON body")
        raise UnknownError("Unable to verify reCAPTCHA. Please try again.")


def require_captcha(token: Optional[str], remote_ip: Optional[str] = None):
    if not token:
        raise ValidationError("Please complete the reCAPTCHA verification", title="Missing reCAPTCHA")
    if not verify_captcha(token, remote_ip):
        raise ValidationError(
            "Please try again with the reCAPTCHA verification", title="reCAPTCHA verification failed"
        )
