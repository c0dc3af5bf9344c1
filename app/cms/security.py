import secrets
import unicodedata

from flask import session, Request


def ensure_csrf_token() -> str:
    """Ensure a CSRF token exists in the session and return it."""
    token = session.get("csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["csrf_token"] = token
    return token


def validate_csrf(req: Request) -> bool:
    """Validate CSRF token from form, header, or JSON body."""
    token = req.headers.get("X-CSRF-Token") or req.form.get("csrf_token")

    # Also check JSON body for API-style requests
    if not token and req.is_json:
        json_data = req.get_json(silent=True)
        if isinstance(json_data, dict):
            token = json_data.get("csrf_token")

    expected = session.get("csrf_token")
    return bool(token and expected and secrets.compare_digest(str(token), str(expected)))


# ---------- Password policy ----------

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 128

PASSWORD_DENYLIST = frozenset(
    {
        "password", "password1", "password12", "password123", "password!",
        "qwerty", "qwerty123", "qwerty1234", "qwertyuiop",
        "123456", "12345678", "123456789", "1234567890", "111111", "123123",
        "admin", "admin123", "admin@123", "administrator", "root", "toor",
        "letmein", "welcome", "welcome1", "monkey", "dragon", "master",
        "sunshine", "princess", "football", "iloveyou", "trustno1", "superman",
        "login", "passw0rd", "abc123", "changeme", "pass", "test", "test123",
        "guest", "default", "temp", "temporary", "website", "cms",
        "changeme12345", "password1234", "welcome12345",
    }
)


def normalize_password(value: str) -> str:
    if not isinstance(value, str):
        return ""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cc")


def validate_password(password: str, *, email: str | None = None) -> str | None:
    """Return an error message, or None when the password is acceptable."""
    pw = normalize_password(password)
    if len(pw) < PASSWORD_MIN_LENGTH:
        return f"Password must be at least {PASSWORD_MIN_LENGTH} characters."
    if len(pw) > PASSWORD_MAX_LENGTH:
        return f"Password must be at most {PASSWORD_MAX_LENGTH} characters."
    lowered = pw.lower()
    if lowered in PASSWORD_DENYLIST:
        return "Password is too common. Choose a less predictable password."
    if email:
        em = email.strip().lower()
        local = em.split("@", 1)[0]
        if lowered == em or (local and lowered == local):
            return "Password must not match your email address."
    return None
