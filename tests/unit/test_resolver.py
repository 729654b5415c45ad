"""Tests for the ImageReferenceResolver — build output validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from dockroll.core.resolver import (
    BuildIncomplete,
    ImageReferenceResolver,
    SecretInBuildInput,
    resolve,
)
from dockroll.models.artifacts import BuildOutput

DIGEST = "sha256:" + "cd" * 32


@pytest.fixture
def binary(tmp_path: Path) -> Path:
    path = tmp_path / "vpn-api"
    path.write_bytes(b"\x7fELF compiled service")
    return path


class TestResolve:
    def test_resolves_reference(self, binary: Path):
        ref = resolve(BuildOutput(binary_path=binary, image="user/vpn-api:latest"))
        assert ref.repository == "user/vpn-api"
        assert ref.tag == "latest"
        assert ref.digest is None

    def test_build_digest_pins_reference(self, binary: Path):
        ref = resolve(
            BuildOutput(binary_path=binary, image="user/vpn-api:latest", image_digest=DIGEST)
        )
        assert ref.digest == DIGEST
        assert ref.pull_ref == f"user/vpn-api@{DIGEST}"

    def test_conflicting_digests_rejected(self, binary: Path):
        other = "sha256:" + "ef" * 32
        with pytest.raises(ValueError, match="pinned"):
            resolve(
                BuildOutput(
                    binary_path=binary,
                    image=f"user/vpn-api:latest@{other}",
                    image_digest=DIGEST,
                )
            )

    def test_missing_binary(self, tmp_path: Path):
        with pytest.raises(BuildIncomplete, match="not found"):
            resolve(BuildOutput(binary_path=tmp_path / "nope", image="user/vpn-api"))

    def test_empty_binary(self, tmp_path: Path):
        empty = tmp_path / "vpn-api"
        empty.touch()
        with pytest.raises(BuildIncomplete, match="empty"):
            resolve(BuildOutput(binary_path=empty, image="user/vpn-api"))

    def test_directory_is_not_a_binary(self, tmp_path: Path):
        with pytest.raises(BuildIncomplete):
            resolve(BuildOutput(binary_path=tmp_path, image="user/vpn-api"))


class TestSecretBuildArgs:
    @pytest.mark.parametrize(
        "name", ["DB_PASSWORD", "jwt_secret", "GITHUB_TOKEN", "SIGNING_KEY", "DATABASE_URL"]
    )
    def test_secret_names_rejected(self, binary: Path, name: str):
        with pytest.raises(SecretInBuildInput, match=name):
            resolve(
                BuildOutput(
                    binary_path=binary, image="user/vpn-api", build_args=["GO_VERSION", name]
                )
            )

    def test_plain_build_args_allowed(self, binary: Path):
        ref = resolve(
            BuildOutput(
                binary_path=binary,
                image="user/vpn-api",
                build_args=["GO_VERSION", "TARGETARCH", "KEYBOARD_LAYOUT"],
            )
        )
        assert ref.repository == "user/vpn-api"

    def test_custom_patterns(self, binary: Path):
        resolver = ImageReferenceResolver(["LICENSE_*"])
        assert resolver.secret_build_args(["LICENSE_BLOB", "DB_PASSWORD"]) == ["LICENSE_BLOB"]

    def test_secret_check_runs_before_publishing(self, binary: Path):
        resolver = ImageReferenceResolver()
        assert resolver.secret_build_args(["API_TOKEN_FILE", "VERSION"]) == ["API_TOKEN_FILE"]
