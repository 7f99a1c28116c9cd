"""Checks that storage and database credentials target one Supabase project."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping
from urllib.parse import unquote, urlsplit

import jwt
from jwt.exceptions import InvalidTokenError

from .errors import CredentialMismatchError

_URL_REF_RE = re.compile(r"^https?://([a-z0-9]+)\.supabase\.co/?$", re.IGNORECASE)
_DB_HOST_RE = re.compile(r"^db\.([a-z0-9]+)\.supabase\.co$", re.IGNORECASE)
_LEGACY_POOLER_RE = re.compile(r"^([a-z0-9]+)\.pooler\.supabase\.com$", re.IGNORECASE)
_POOLER_SUFFIX = ".pooler.supabase.com"
_POOLER_USER_REF_RE = re.compile(r"^[a-z0-9]{10,}$", re.IGNORECASE)
SERVICE_ROLE = "service_role"


def decode_jwt_payload(token: str) -> dict[str, Any] | None:
    """Claims of ``token`` without signature verification, or None."""
    try:
        payload = jwt.decode(
            token.strip(),
            options={"verify_signature": False, "verify_exp": False},
        )
    except InvalidTokenError:
        return None
    return payload if isinstance(payload, dict) else None


def project_ref_from_url(url: str) -> str | None:
    match = _URL_REF_RE.match(url.strip())
    return match.group(1) if match else None


def project_ref_from_db_url(db_url: str) -> str | None:
    """Project ref from a direct (``db.<ref>.supabase.co``) or pooler URL.

    Region poolers (``aws-0-<region>.pooler.supabase.com``) carry the ref in
    the user name instead: ``postgres.<ref>``.
    """
    try:
        parts = urlsplit(db_url.strip())
    except ValueError:
        return None
    host = parts.hostname or ""
    match = _DB_HOST_RE.match(host) or _LEGACY_POOLER_RE.match(host)
    if match:
        return match.group(1)
    if host.lower().endswith(_POOLER_SUFFIX):
        user_parts = [p for p in unquote(parts.username or "").split(".") if p]
        candidate = user_parts[-1] if len(user_parts) >= 2 else None
        if candidate and _POOLER_USER_REF_RE.match(candidate):
            return candidate
    return None


def check_service_role_key(supabase_url: str, service_role_key: str) -> str:
    """Validate the key against the URL and return the project ref."""
    ref_from_url = project_ref_from_url(supabase_url)
    payload = decode_jwt_payload(service_role_key)
    if payload is None:
        raise CredentialMismatchError("SUPABASE_SERVICE_ROLE_KEY does not look like a JWT")
    if ref_from_url is None:
        raise CredentialMismatchError("SUPABASE_URL does not look like https://<project-ref>.supabase.co")
    ref_from_key = payload.get("ref") or payload.get("project_ref")
    if ref_from_key and ref_from_key != ref_from_url:
        raise CredentialMismatchError(
            f"SUPABASE_SERVICE_ROLE_KEY project ref ({ref_from_key}) does not match "
            f"SUPABASE_URL project ref ({ref_from_url})."
        )
    role = payload.get("role")
    if role and role != SERVICE_ROLE:
        raise CredentialMismatchError(
            f"SUPABASE_SERVICE_ROLE_KEY role is \"{role}\", expected \"{SERVICE_ROLE}\"."
        )
    return ref_from_url


def check_db_url(supabase_url: str, db_url: str) -> str:
    ref_from_url = project_ref_from_url(supabase_url)
    ref_from_db = project_ref_from_db_url(db_url)
    if ref_from_url is None:
        raise CredentialMismatchError("SUPABASE_URL does not look like https://<project-ref>.supabase.co")
    if ref_from_db is None:
        raise CredentialMismatchError("SUPABASE_DB_URL does not look like a Supabase Postgres connection URL")
    if ref_from_db != ref_from_url:
        raise CredentialMismatchError(
            f"SUPABASE_DB_URL project ref ({ref_from_db}) does not match "
            f"SUPABASE_URL project ref ({ref_from_url})."
        )
    return ref_from_db


@dataclass(frozen=True, slots=True)
class CredentialCheck:
    project_ref: str
    db_checked: bool


def check_credentials(
    supabase_url: str | None,
    service_role_key: str | None,
    db_url: str | None = None,
) -> CredentialCheck:
    """Pass/fail validation run before any remote mutation."""
    if not supabase_url or not service_role_key:
        raise CredentialMismatchError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must both be set")
    ref = check_service_role_key(supabase_url, service_role_key)
    if db_url:
        check_db_url(supabase_url, db_url)
    return CredentialCheck(project_ref=ref, db_checked=bool(db_url))


def redact(values: Mapping[str, str | None]) -> dict[str, str]:
    """Presence-only view of secrets, safe to log."""
    return {key: ("set" if value else "missing") for key, value in values.items()}
