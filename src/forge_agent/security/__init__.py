"""Security helpers: secret scanning and redaction."""

from forge_agent.security.redaction import (
    REDACTED_VALUE,
    contains_secret,
    is_sensitive_key,
    redact_structure,
    redact_text,
    scan_for_secrets,
)

__all__ = [
    "REDACTED_VALUE",
    "contains_secret",
    "is_sensitive_key",
    "redact_structure",
    "redact_text",
    "scan_for_secrets",
]
