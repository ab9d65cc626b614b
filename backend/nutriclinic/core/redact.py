"""Helpers that keep personal data and secrets out of log lines."""

from typing import Optional


def mask_email(email: Optional[str]) -> str:
    """``john.doe@example.com`` -> ``j...e@example.com``"""
    try:
        local, domain = email.split("@", 1)
    except (AttributeError, ValueError):
        return "unknown"
    visible = f"{local[0]}...{local[-1]}" if len(local) > 1 else local
    return f"{visible}@{domain}"


def short_token(value: Optional[str]) -> str:
    """First six characters of a secret, enough to correlate log lines."""
    if not value:
        return ""
    if len(value) <= 8:
        return "***"
    return f"{value[:6]}..."
