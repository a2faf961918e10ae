from __future__ import annotations

from pathlib import Path

import pytest

import ci_release.secrets as secrets


@pytest.fixture()
def isolated_secrets(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(secrets, "_resolvers", [])
    secrets.register_resolver(secrets.EnvResolver(), priority=0, name="env", source="env")
    return secrets


def test_resolve_secret_info_reports_env(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.setenv("TEST_SECRET", "value")

    info = isolated_secrets.resolve_secret_info(secrets.SecretRef(name="TEST_SECRET"))

    assert info.secret is not None
    assert info.secret.reveal() == "value"
    assert info.source == "env"
    assert any(attempt.success for attempt in info.attempts)


def test_resolve_secret_info_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.delenv("DOT_SECRET", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text('DOT_SECRET="abc123"  # inline comment\n')
    isolated_secrets.use_dotenv(env_file)

    info = isolated_secrets.resolve_secret_info(secrets.SecretRef(name="DOT_SECRET"))

    assert info.secret is not None
    assert info.secret.reveal() == "abc123"
    assert info.source == "dotenv"
    assert info.attempts[0].resolver == "env"
    assert not info.attempts[0].success
    dotenv_attempt = info.attempts[1]
    assert dotenv_attempt.success
    assert dotenv_attempt.details["path"] == str(env_file)


def test_resolve_secret_missing_lists_resolvers(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, isolated_secrets
) -> None:
    monkeypatch.delenv("UNKNOWN_SECRET", raising=False)
    env_file = tmp_path / ".env"
    isolated_secrets.use_dotenv(env_file)

    with pytest.raises(secrets.SecretResolutionError) as excinfo:
        isolated_secrets.resolve_secret(secrets.SecretRef(name="UNKNOWN_SECRET"))

    message = str(excinfo.value)
    assert "UNKNOWN_SECRET" in message
    assert "env" in message
    assert f"dotenv@{env_file}" in message


def test_encrypted_reference_reported_in_error(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.delenv("CI_RELEASE_API_KEY", raising=False)

    with pytest.raises(secrets.SecretResolutionError, match="encrypted secret"):
        isolated_secrets.resolve_secret(secrets.SecretRef(secure="b64payload"))


def test_secret_value_is_masked(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    monkeypatch.setenv("CI_RELEASE_API_KEY", "ghp_topsecret")

    secret = isolated_secrets.resolve_secret(secrets.SecretRef())

    assert secret.reveal() == "ghp_topsecret"
    assert "ghp_topsecret" not in repr(secret)
    assert str(secret) == "***"
    assert secret.source == "env"


def test_higher_priority_resolver_wins(monkeypatch: pytest.MonkeyPatch, isolated_secrets) -> None:
    class Static:
        def resolve(self, ref: secrets.SecretRef):
            return "from-static"

    monkeypatch.setenv("PRIORITY_SECRET", "from-env")
    isolated_secrets.register_resolver(Static(), priority=5, name="static")

    info = isolated_secrets.resolve_secret_info(secrets.SecretRef(name="PRIORITY_SECRET"))

    assert info.resolver == "static"
    assert info.secret is not None and info.secret.reveal() == "from-static"
    assert len(info.attempts) == 1
