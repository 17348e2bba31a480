# backend/backoffice/config.py
from __future__ import annotations
import os


def _csv(value: str) -> frozenset[str]:
    return frozenset(part.strip().lower() for part in value.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Document numbering
    SEQUENCE_PAD_WIDTH = int(os.environ.get("SEQUENCE_PAD_WIDTH", "4"))
    SEQUENCE_RETRY_ATTEMPTS = int(os.environ.get("SEQUENCE_RETRY_ATTEMPTS", "5"))

    # Audit trail (fire-and-forget writes on a detached worker pool)
    AUDIT_MAX_WORKERS = int(os.environ.get("AUDIT_MAX_WORKERS", "2"))
    AUDIT_DRAIN_TIMEOUT = float(os.environ.get("AUDIT_DRAIN_TIMEOUT", "10"))
    AUDIT_SENSITIVE_FIELDS = _csv(
        os.environ.get(
            "AUDIT_SENSITIVE_FIELDS",
            "password,password_hash,refresh_token,token,pin_hash,secret",
        )
    )
    AUDIT_REDACTION_MARKER = os.environ.get("AUDIT_REDACTION_MARKER", "[REDACTED]")

    # Approved edit requests let the requester edit a locked document for this long
    EDIT_PERMISSION_MINUTES = int(os.environ.get("EDIT_PERMISSION_MINUTES", "5"))
