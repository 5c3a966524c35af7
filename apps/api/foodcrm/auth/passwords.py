from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field

import httpx

from foodcrm.core.config import Settings, get_settings

logger = logging.getLogger("foodcrm.auth.passwords")

COMMON_PASSWORDS = (
    "password",
    "123456",
    "12345678",
    "qwerty",
    "abc123",
    "password123",
    "admin",
    "letmein",
    "welcome",
    "monkey",
)
_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?]")


@dataclass
class PasswordCheck:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    score: int = 0


def validate_password_strength(
    password: str,
    user_info: dict[str, str | None] | None = None,
    *,
    min_length: int | None = None,
) -> PasswordCheck:
    """Apply the password policy.

    ``score`` runs from 0 to 5: one point each for length, mixed case, digits,
    special characters and passing the common/personal-word checks.
    """
    min_length = min_length or get_settings().password_min_length
    errors: list[str] = []
    score = 0

    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters long")
    else:
        score += 1
    has_upper = re.search(r"[A-Z]", password) is not None
    has_lower = re.search(r"[a-z]", password) is not None
    if not has_upper:
        errors.append("Password must contain at least one uppercase letter")
    if not has_lower:
        errors.append("Password must contain at least one lowercase letter")
    if has_upper and has_lower:
        score += 1
    if re.search(r"\d", password) is None:
        errors.append("Password must contain at least one number")
    else:
        score += 1
    if _SPECIAL_RE.search(password) is None:
        errors.append("Password must contain at least one special character")
    else:
        score += 1

    lowered = password.lower()
    word_check_passed = True
    if any(common in lowered for common in COMMON_PASSWORDS):
        errors.append("Password contains common words and is not secure")
        word_check_passed = False

    if user_info:
        email = user_info.get("email") or ""
        personal = [email.split("@")[0], user_info.get("first_name"), user_info.get("last_name")]
        if any(value and len(value) >= 3 and value.lower() in lowered for value in personal):
            errors.append("Password cannot contain personal information")
            word_check_passed = False
    if word_check_passed:
        score += 1

    return PasswordCheck(is_valid=not errors, errors=errors, score=score)


def check_password_breach(password: str, settings: Settings | None = None, client: httpx.Client | None = None) -> bool:
    """k-anonymity range lookup: only the first five SHA-1 hex chars leave the process."""
    settings = settings or get_settings()
    if not settings.password_breach_check_enabled:
        return False

    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    prefix, suffix = digest[:5], digest[5:]
    url = f"{settings.password_breach_api_url.rstrip('/')}/{prefix}"
    try:
        if client is not None:
            response = client.get(url)
        else:
            with httpx.Client(timeout=settings.password_breach_timeout_seconds) as owned_client:
                response = owned_client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("password.breach_check_failed", extra={"error": str(exc)})
        return False

    for line in response.text.splitlines():
        candidate, _, _count = line.partition(":")
        if candidate.strip().upper() == suffix:
            return True
    return False
