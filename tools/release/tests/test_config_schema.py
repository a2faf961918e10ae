from __future__ import annotations

from pathlib import Path

import pytest

from ci_release.schemas import ConfigError, load_config, parse_config, parse_env_assignments, toolchain_variable

TRAVIS_YML = """\
language: rust
cache: cargo

env:
  global:
    - PROJECT_NAME=t-rex
    - MAKE_DEB=yes
    - DEB_MAINTAINER="Pirmin Kalberer <pi_deb@sourcepole.ch>"

matrix:
  include:
    - os: linux
      rust: stable
      env: TARGET=x86_64-unknown-linux-gnu

services:
  - postgresql

before_install:
  - export PATH="$PATH:$HOME/.cargo/bin"

install:
  - bash ci/install.sh

script:
  - bash ci/script.sh

before_deploy:
  - bash ci/before_deploy.sh

deploy:
  provider: releases
  api_key:
    secure: c2VjcmV0
  file_glob: true
  file: ${PROJECT_NAME}-${TRAVIS_TAG}-${TARGET}.*
  skip_cleanup: true
  on:
    condition: $TRAVIS_RUST_VERSION = stable
    tags: true

notifications:
  email:
    on_success: never
"""


@pytest.fixture()
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / ".travis.yml"
    path.write_text(TRAVIS_YML, encoding="utf-8")
    return path


def test_load_config_parses_travis_document(config_file: Path) -> None:
    config = load_config(config_file)

    assert config.language == "rust"
    assert config.toolchain_variable == "TRAVIS_RUST_VERSION"
    assert config.global_env == {
        "PROJECT_NAME": "t-rex",
        "MAKE_DEB": "yes",
        "DEB_MAINTAINER": "Pirmin Kalberer <pi_deb@sourcepole.ch>",
    }
    assert len(config.matrix) == 1
    entry = config.matrix[0]
    assert (entry.os, entry.toolchain) == ("linux", "stable")
    assert entry.env == {"TARGET": "x86_64-unknown-linux-gnu"}
    assert config.services == ["postgresql"]
    assert config.stage_commands("install") == ["bash ci/install.sh"]
    assert config.stage_commands("before_deploy") == ["bash ci/before_deploy.sh"]


def test_deploy_condition_reads_bare_on_key(config_file: Path) -> None:
    deploy = load_config(config_file).deploy

    assert deploy is not None
    assert deploy.provider == "releases"
    assert deploy.file_glob is True
    assert deploy.skip_cleanup is True
    assert deploy.file_pattern == "${PROJECT_NAME}-${TRAVIS_TAG}-${TARGET}.*"
    assert deploy.condition.tags_only is True
    assert deploy.condition.required_toolchain_version == "stable"


def test_secure_api_key_is_not_exposed(config_file: Path) -> None:
    deploy = load_config(config_file).deploy

    assert deploy is not None and deploy.api_key is not None
    assert deploy.api_key.name == "CI_RELEASE_API_KEY"
    assert deploy.api_key.secure == "c2VjcmV0"
    assert "c2VjcmV0" not in repr(deploy.api_key)


def test_email_on_success_never(config_file: Path) -> None:
    email = load_config(config_file).notifications.email

    assert email is not None
    assert email.on_success == "never"
    assert email.on_failure == "always"


def test_missing_language_is_config_error() -> None:
    with pytest.raises(ConfigError, match="language"):
        parse_config({"matrix": {"include": [{"os": "linux"}]}, "script": ["true"]})


def test_missing_script_is_config_error() -> None:
    with pytest.raises(ConfigError, match="script"):
        parse_config({"language": "rust", "matrix": {"include": [{"os": "linux"}]}})


def test_missing_matrix_is_config_error() -> None:
    with pytest.raises(ConfigError, match="matrix"):
        parse_config({"language": "rust", "script": ["cargo test"]})


def test_missing_deploy_file_is_config_error() -> None:
    document = {
        "language": "rust",
        "matrix": {"include": [{"os": "linux"}]},
        "script": ["cargo build"],
        "deploy": {"provider": "releases"},
    }
    with pytest.raises(ConfigError, match="deploy.file"):
        parse_config(document)


def test_plaintext_api_key_is_rejected() -> None:
    document = {
        "language": "rust",
        "matrix": {"include": [{"os": "linux"}]},
        "script": ["cargo build"],
        "deploy": {"provider": "releases", "file": "dist/*", "api_key": "ghp_plaintext"},
    }
    with pytest.raises(ConfigError, match="api_key"):
        parse_config(document)


def test_api_key_env_reference() -> None:
    document = {
        "language": "rust",
        "matrix": {"include": [{"os": "linux"}]},
        "script": ["cargo build"],
        "deploy": {"provider": "releases", "file": "dist/*", "api_key": "$GITHUB_TOKEN"},
    }
    deploy = parse_config(document).deploy
    assert deploy is not None and deploy.api_key is not None
    assert deploy.api_key.name == "GITHUB_TOKEN"
    assert deploy.api_key.secure is None


def test_condition_must_compare_language_toolchain() -> None:
    document = {
        "language": "rust",
        "matrix": {"include": [{"os": "linux"}]},
        "script": ["cargo build"],
        "deploy": {"provider": "releases", "file": "dist/*", "on": {"condition": "$TRAVIS_OS_NAME = linux"}},
    }
    with pytest.raises(ConfigError, match="TRAVIS_RUST_VERSION"):
        parse_config(document)


def test_invalid_yaml_is_config_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.yml"
    path.write_text("language: [rust\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Invalid YAML"):
        load_config(path)


def test_unreadable_config_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Cannot read"):
        load_config(tmp_path / "missing.yml")


def test_matrix_expands_os_toolchain_and_env_rows() -> None:
    document = {
        "language": "rust",
        "os": ["linux", "osx"],
        "rust": ["stable", "nightly"],
        "env": {"global": ["A=1"], "matrix": ["MODE=fast", "MODE=slow"]},
        "script": ["cargo test"],
    }
    config = parse_config(document)

    assert config.global_env == {"A": "1"}
    assert len(config.matrix) == 8
    assert config.matrix[0].os == "linux"
    assert config.matrix[0].toolchain == "stable"
    assert config.matrix[0].env == {"MODE": "fast"}
    assert config.matrix[-1].os == "osx"
    assert config.matrix[-1].toolchain == "nightly"
    assert config.matrix[-1].env == {"MODE": "slow"}


def test_matrix_expands_without_env_rows() -> None:
    config = parse_config({"language": "rust", "rust": ["stable", "beta"], "script": ["cargo test"]})

    assert [entry.toolchain for entry in config.matrix] == ["stable", "beta"]
    assert all(entry.env == {} for entry in config.matrix)


def test_notifications_email_false_disables_email() -> None:
    document = {
        "language": "rust",
        "matrix": {"include": [{"os": "linux"}]},
        "script": ["cargo build"],
        "notifications": {"email": False, "webhooks": "https://hooks.example.com/ci"},
    }
    notifications = parse_config(document).notifications

    assert notifications.email is not None
    assert notifications.email.on_success == "never"
    assert notifications.email.on_failure == "never"
    assert notifications.webhooks is not None
    assert notifications.webhooks.urls == ["https://hooks.example.com/ci"]


def test_parse_env_assignments_uses_shell_quoting() -> None:
    assert parse_env_assignments('A=1 B="two words" C=') == {"A": "1", "B": "two words", "C": ""}


def test_parse_env_assignments_skips_secure_entries() -> None:
    assert parse_env_assignments([{"secure": "abc"}, "A=1"]) == {"A": "1"}


def test_parse_env_assignments_rejects_bare_words() -> None:
    with pytest.raises(ConfigError, match="NAME=value"):
        parse_env_assignments("JUSTAWORD")


def test_toolchain_variable_normalizes_language() -> None:
    assert toolchain_variable("rust") == "TRAVIS_RUST_VERSION"
    assert toolchain_variable("objective-c") == "TRAVIS_OBJECTIVE_C_VERSION"


def test_unsupported_keys_are_logged(caplog: pytest.LogCaptureFixture) -> None:
    document = {
        "language": "rust",
        "matrix": {"include": [{"os": "linux"}]},
        "script": ["cargo build"],
        "cache": "cargo",
        "sudo": "required",
    }

    with caplog.at_level("WARNING", logger="ci_release.schemas.config"):
        config = parse_config(document)

    assert config.stage_commands("script") == ["cargo build"]
    assert "Ignoring unsupported config key(s): cache, sudo" in caplog.text
