"""Tests for config.toml loading."""

import pytest

from instrusign.src.utils.config_loader import (
    get_config_path,
    get_home_dir,
    get_signing_section,
    load_config,
)


def test_home_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("INSTRUSIGN_HOME", str(tmp_path))
    assert get_home_dir() == tmp_path
    assert get_config_path() == tmp_path / "config.toml"


def test_missing_config_is_empty(tmp_path):
    assert load_config(tmp_path / "config.toml") == {}


def test_load_signing_section(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(
        '[signing]\nprivate_key = "~/key.p12"\n\n'
        '[signing.profiles]\n"com.example.app" = "/p/app.mobileprovision"\n'
    )
    signing = get_signing_section(load_config(path))
    assert signing["private_key"] == "~/key.p12"
    assert signing["profiles"] == {"com.example.app": "/p/app.mobileprovision"}
    assert signing["certificates"] == {}


def test_invalid_toml(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[signing\n")
    with pytest.raises(ValueError):
        load_config(path)
