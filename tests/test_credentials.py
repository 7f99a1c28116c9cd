"""Tests for Supabase project-ref credential checks."""

from __future__ import annotations

import jwt
import pytest

from tilebuilder.credentials import (
    check_credentials,
    check_db_url,
    check_service_role_key,
    decode_jwt_payload,
    project_ref_from_db_url,
    project_ref_from_url,
)
from tilebuilder.errors import CredentialMismatchError

REF = "abcdefghijklmnopqrst"
URL = f"https://{REF}.supabase.co"
SIGNING_KEY = "test-signing-key-with-enough-bytes-0123456789"


def _token(**claims: str) -> str:
    return jwt.encode(claims, SIGNING_KEY, algorithm="HS256")


def test_project_ref_from_url() -> None:
    assert project_ref_from_url(URL) == REF
    assert project_ref_from_url(f"{URL}/") == REF
    assert project_ref_from_url("https://example.com") is None


@pytest.mark.parametrize(
    ("db_url", "expected"),
    [
        (f"postgresql://postgres:pw@db.{REF}.supabase.co:5432/postgres", REF),
        (f"postgresql://postgres:pw@{REF}.pooler.supabase.com:6543/postgres", REF),
        (f"postgresql://postgres.{REF}:pw@aws-0-eu-west-3.pooler.supabase.com:6543/postgres", REF),
        ("postgresql://postgres.short:pw@aws-0-eu-west-3.pooler.supabase.com:6543/postgres", None),
        ("postgresql://postgres:pw@localhost:5432/postgres", None),
    ],
)
def test_project_ref_from_db_url(db_url: str, expected: str | None) -> None:
    assert project_ref_from_db_url(db_url) == expected


def test_decode_jwt_payload_without_verification() -> None:
    assert decode_jwt_payload(_token(ref=REF, role="service_role")) == {"ref": REF, "role": "service_role"}
    assert decode_jwt_payload("not-a-jwt") is None


def test_service_role_key_matching_project() -> None:
    assert check_service_role_key(URL, _token(ref=REF, role="service_role")) == REF


@pytest.mark.parametrize(
    "token",
    [
        _token(ref="zzzzzzzzzzzzzzzzzzzz", role="service_role"),
        _token(ref=REF, role="anon"),
        "not-a-jwt",
    ],
)
def test_service_role_key_mismatch(token: str) -> None:
    with pytest.raises(CredentialMismatchError):
        check_service_role_key(URL, token)


def test_db_url_mismatch() -> None:
    with pytest.raises(CredentialMismatchError):
        check_db_url(URL, "postgresql://postgres:pw@db.zzzzzzzzzzzzzzzzzzzz.supabase.co:5432/postgres")
    with pytest.raises(CredentialMismatchError):
        check_db_url(URL, "postgresql://postgres:pw@localhost:5432/postgres")


def test_check_credentials_combines_checks() -> None:
    token = _token(project_ref=REF, role="service_role")
    check = check_credentials(URL, token, f"postgresql://postgres:pw@db.{REF}.supabase.co:5432/postgres")
    assert check.project_ref == REF
    assert check.db_checked
    assert not check_credentials(URL, token).db_checked
    with pytest.raises(CredentialMismatchError):
        check_credentials(None, token)
