from __future__ import annotations

import pytest

from ci_release.schemas import ConfigError, parse_config
from ci_release_pipeline.environment import derive_target, expand_variables, path_additions, resolve_environments


def _config(matrix, **extra):
    document = {"language": "rust", "matrix": {"include": matrix}, "script": ["cargo test"]}
    document.update(extra)
    return parse_config(document)


def test_resolve_single_entry_injects_ci_variables() -> None:
    config = _config(
        [{"os": "linux", "rust": "stable", "env": "TARGET=x86_64-unknown-linux-gnu"}],
        env={"global": ["PROJECT_NAME=t-rex"]},
    )

    [environment] = resolve_environments(config)

    assert environment.os == "linux"
    assert environment.toolchain == "stable"
    assert environment.target == "x86_64-unknown-linux-gnu"
    assert environment.name == "linux/stable/x86_64-unknown-linux-gnu"
    assert environment.variables["CI"] == "true"
    assert environment.variables["TRAVIS"] == "true"
    assert environment.variables["TRAVIS_OS_NAME"] == "linux"
    assert environment.variables["TRAVIS_RUST_VERSION"] == "stable"
    assert environment.variables["PROJECT_NAME"] == "t-rex"


def test_matrix_overlay_wins_over_global() -> None:
    config = _config(
        [{"os": "linux", "rust": "stable", "env": "MODE=release"}],
        env={"global": ["MODE=debug", "KEEP=1"]},
    )

    [environment] = resolve_environments(config)

    assert environment.variables["MODE"] == "release"
    assert environment.variables["KEEP"] == "1"


def test_target_derived_from_os_and_arch() -> None:
    config = _config(
        [
            {"os": "linux", "rust": "stable"},
            {"os": "osx", "rust": "stable"},
            {"os": "linux", "rust": "stable", "arch": "arm64"},
        ]
    )

    targets = [environment.target for environment in resolve_environments(config)]

    assert targets == ["x86_64-unknown-linux-gnu", "x86_64-apple-darwin", "aarch64-unknown-linux-gnu"]


def test_templated_values_expand_in_order() -> None:
    config = _config(
        [{"os": "linux", "rust": "nightly", "env": "ARCHIVE=${PROJECT_NAME}-${TARGET}"}],
        env={"global": ["PROJECT_NAME=t-rex"]},
    )

    [environment] = resolve_environments(config)

    assert environment.variables["ARCHIVE"] == "t-rex-x86_64-unknown-linux-gnu"


def test_templated_values_see_earlier_entries() -> None:
    config = _config(
        [{"os": "linux", "rust": "beta", "env": "LABEL=$TRAVIS_OS_NAME-$TRAVIS_RUST_VERSION"}],
    )

    [environment] = resolve_environments(config)

    assert environment.variables["LABEL"] == "linux-beta"


def test_missing_toolchain_uses_language_default() -> None:
    [environment] = resolve_environments(_config([{"os": "linux"}]))
    assert environment.toolchain == "stable"


def test_missing_toolchain_without_default_is_config_error() -> None:
    config = parse_config({"language": "go", "matrix": {"include": [{"os": "linux"}]}, "script": ["go test"]})
    with pytest.raises(ConfigError, match="toolchain"):
        resolve_environments(config)


def test_unknown_os_is_config_error() -> None:
    with pytest.raises(ConfigError, match="unknown os"):
        resolve_environments(_config([{"os": "plan9", "rust": "stable"}]))


def test_undefined_toolchain_is_config_error() -> None:
    with pytest.raises(ConfigError, match="undefined toolchain"):
        resolve_environments(_config([{"os": "linux", "rust": "bleeding"}]))


@pytest.mark.parametrize("toolchain", ["1.70.0", "1.70", "nightly-2024-01-01"])
def test_versioned_toolchains_are_accepted(toolchain: str) -> None:
    [environment] = resolve_environments(_config([{"os": "linux", "rust": toolchain}]))
    assert environment.variables["TRAVIS_RUST_VERSION"] == toolchain


def test_duplicate_target_is_config_error() -> None:
    config = _config(
        [
            {"os": "linux", "rust": "stable"},
            {"os": "linux", "rust": "stable", "env": "TARGET=x86_64-unknown-linux-gnu"},
        ]
    )
    with pytest.raises(ConfigError, match="duplicates"):
        resolve_environments(config)


def test_same_target_on_different_toolchains_is_allowed() -> None:
    config = _config([{"os": "linux", "rust": "stable"}, {"os": "linux", "rust": "nightly"}])
    assert len(resolve_environments(config)) == 2


def test_expand_variables_leaves_unknown_references() -> None:
    assert expand_variables("$HOME/x-${A}-$B", {"A": "1"}) == "$HOME/x-1-$B"


def test_path_additions_and_target_helpers() -> None:
    assert path_additions("rust") == ("$HOME/.cargo/bin",)
    assert path_additions("python") == ()
    assert derive_target("windows", "x86_64") == "x86_64-pc-windows-msvc"
