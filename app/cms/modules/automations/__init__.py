"""Automations triggered by account lifecycle events."""

from app.cms.modules.automations.signup import (  # noqa: F401
    EnsureMemberResult,
    SignupResult,
    ensure_member_in_crm,
    on_member_signup,
)
