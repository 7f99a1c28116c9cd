"""CLI smoke tests against a temporary config."""

from __future__ import annotations

import json
from pathlib import Path

import jwt
import pytest

from helpers import departements_collection, write_config
from tilebuilder.cli import main

REF = "abcdefghijklmnopqrst"
ENV_NAMES = (
    "SOURCE_URL",
    "SOURCE_SCALE",
    "ALLOW_DESTRUCTIVE",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_DB_URL",
)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_check_credentials_ok(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> None:
    token = jwt.encode({"ref": REF, "role": "service_role"}, "cli-test-signing-key-0123456789abcdef", algorithm="HS256")
    clean_env.setenv("SUPABASE_URL", f"https://{REF}.supabase.co")
    clean_env.setenv("SUPABASE_SERVICE_ROLE_KEY", token)
    config = write_config(tmp_path)
    assert main(["check-credentials", "--config", str(config), "--collection", "countries"]) == 0


def test_check_credentials_missing(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> None:
    config = write_config(tmp_path)
    assert main(["check-credentials", "--config", str(config), "--collection", "countries"]) == 1


def test_generate_with_renderer_option(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> None:
    config = write_config(tmp_path)
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "departements-coarse.geojson").write_text(json.dumps(departements_collection()), encoding="utf-8")

    code = main(
        [
            "generate",
            "--config",
            str(config),
            "--collection",
            "departements",
            "--renderer",
            "helpers:render_stub",
        ]
    )
    assert code == 0
    assert (tmp_path / "out" / "departements" / "svg" / "971.svg").exists()
    assert (tmp_path / "logs" / "tilebuilder.log").exists()


def test_generate_without_renderer_fails(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> None:
    config = write_config(tmp_path)
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "departements-coarse.geojson").write_text(json.dumps(departements_collection()), encoding="utf-8")
    assert main(["generate", "--config", str(config), "--collection", "departements"]) == 1


def test_reset_refused_without_flag(tmp_path: Path, clean_env: pytest.MonkeyPatch) -> None:
    config = write_config(tmp_path)
    assert main(["reset", "--config", str(config), "--collection", "departements"]) == 1


def test_unknown_collection_is_a_usage_error(tmp_path: Path) -> None:
    with pytest.raises(SystemExit):
        main(["seed", "--config", str(write_config(tmp_path)), "--collection", "regions"])
