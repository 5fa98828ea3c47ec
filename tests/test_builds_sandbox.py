"""Tests for sandbox configuration and runtime detection."""

import subprocess
from pathlib import PurePosixPath
from unittest.mock import MagicMock, patch

import pytest

from rootfsgen.builds.sandbox import (
    CONTAINER_DEST,
    CONTAINER_WORK,
    Mount,
    MountFailureError,
    RuntimeUnavailableError,
    build_sandbox_config,
    compose_container_command,
    detect_runtime,
    kill_container,
    require_runtime,
    resolve_sandbox_enabled,
)
from rootfsgen.types import ContainerRuntime


@pytest.fixture
def dirs(tmp_path):
    """Host directories for one package build."""
    paths = {}
    for name in ("src", "pkg", "work", "dest", "zlib"):
        paths[name] = tmp_path / name
        paths[name].mkdir()
    return paths


def _config(dirs, network: bool = False):
    return build_sandbox_config(
        runtime=ContainerRuntime.DOCKER,
        image="alpine:3.19",
        src_dir=dirs["src"],
        package_dir=dirs["pkg"],
        work_dir=dirs["work"],
        dest_dir=dirs["dest"],
        dependency_dirs={"zlib": dirs["zlib"]},
        network=network,
        env={"TARGET": "aarch64-linux-musl", "DESTDIR": str(CONTAINER_DEST)},
        name="rootfsgen-hello-1234",
    )


class TestMountPolicy:
    """Test mounts and network policy."""

    def test_only_work_and_dest_writable(self, dirs) -> None:
        """Source, package and dependency mounts are read-only."""
        config = _config(dirs)

        writable = {m.container for m in config.mounts if not m.read_only}
        assert writable == {CONTAINER_WORK, CONTAINER_DEST}
        deps = [m for m in config.mounts if m.container == PurePosixPath("/rootfsgen/deps/zlib")]
        assert deps[0].read_only

    def test_network_disabled_by_default(self, dirs) -> None:
        """Packages that do not ask for network get --network=none."""
        cmd = compose_container_command(_config(dirs), ["sh", "-euc", "make"])

        assert "--network=none" in cmd

    def test_network_allowed_on_request(self, dirs) -> None:
        """Packages that ask for network keep the default network."""
        cmd = compose_container_command(_config(dirs, network=True), ["sh", "-euc", "make"])

        assert "--network=none" not in cmd

    def test_command_shape(self, dirs) -> None:
        """The command runs the image with mounts, workdir and env."""
        cmd = compose_container_command(_config(dirs), ["sh", "-euc", "make"])

        assert cmd[:3] == ["docker", "run", "--rm"]
        assert "--name=rootfsgen-hello-1234" in cmd
        assert f"-v={dirs['src']}:/rootfsgen/src:ro" in cmd
        assert f"-v={dirs['dest']}:/rootfsgen/dest" in cmd
        assert "-w=/rootfsgen/work" in cmd
        assert "-e=TARGET=aarch64-linux-musl" in cmd
        image_at = cmd.index("alpine:3.19")
        assert cmd[image_at + 1 :] == ["sh", "-euc", "make"]

    def test_missing_mount_source(self, dirs, tmp_path) -> None:
        """A missing host directory raises MountFailureError."""
        dirs["src"] = tmp_path / "missing"

        with pytest.raises(MountFailureError) as exc_info:
            _config(dirs)

        assert exc_info.value.path == tmp_path / "missing"
        assert exc_info.value.code == "mount_failure"

    def test_mount_arg(self, tmp_path) -> None:
        """Read-only mounts carry the :ro suffix."""
        assert Mount(tmp_path, PurePosixPath("/x")).to_arg() == f"-v={tmp_path}:/x:ro"
        assert Mount(tmp_path, PurePosixPath("/x"), read_only=False).to_arg() == f"-v={tmp_path}:/x"


class TestSandboxDecision:
    """Test resolve_sandbox_enabled."""

    @pytest.mark.parametrize(
        ("cli", "manifest", "default", "expected"),
        [
            (True, False, False, True),
            (False, True, True, False),
            (None, True, False, True),
            (None, False, True, False),
            (None, None, True, True),
            (None, None, False, False),
        ],
    )
    def test_precedence(self, cli, manifest, default, expected) -> None:
        """CLI flag beats the manifest, which beats the default."""
        assert resolve_sandbox_enabled(cli, manifest, default) is expected


class TestRuntimeDetection:
    """Test container runtime detection."""

    def test_prefers_docker(self) -> None:
        """Docker is chosen when both work."""
        with (
            patch("rootfsgen.builds.sandbox.shutil.which", side_effect=lambda n: f"/usr/bin/{n}"),
            patch(
                "rootfsgen.builds.sandbox.subprocess.run",
                return_value=MagicMock(returncode=0),
            ),
        ):
            assert detect_runtime() == ContainerRuntime.DOCKER

    def test_falls_back_to_podman(self) -> None:
        """Podman is used when docker is not installed."""
        def which(name: str) -> str | None:
            return "/usr/bin/podman" if name == "podman" else None

        with (
            patch("rootfsgen.builds.sandbox.shutil.which", side_effect=which),
            patch(
                "rootfsgen.builds.sandbox.subprocess.run",
                return_value=MagicMock(returncode=0),
            ),
        ):
            assert detect_runtime() == ContainerRuntime.PODMAN

    def test_broken_runtime_skipped(self) -> None:
        """A runtime whose probe fails is not used."""
        with (
            patch("rootfsgen.builds.sandbox.shutil.which", return_value="/usr/bin/docker"),
            patch(
                "rootfsgen.builds.sandbox.subprocess.run",
                side_effect=subprocess.TimeoutExpired("docker", 10),
            ),
        ):
            assert detect_runtime() is None

    def test_require_runtime_unavailable(self) -> None:
        """require_runtime raises when nothing is installed."""
        with patch("rootfsgen.builds.sandbox.shutil.which", return_value=None):
            with pytest.raises(RuntimeUnavailableError) as exc_info:
                require_runtime()

        assert exc_info.value.code == "runtime_unavailable"
        assert "--no-sandbox" in str(exc_info.value)

    def test_kill_container(self) -> None:
        """kill_container calls '<runtime> kill <name>'."""
        with patch("rootfsgen.builds.sandbox.subprocess.run") as run:
            kill_container(ContainerRuntime.PODMAN, "rootfsgen-x")

        assert run.call_args.args[0] == ["podman", "kill", "rootfsgen-x"]

    def test_kill_container_errors_logged(self) -> None:
        """kill_container does not raise when the runtime is gone."""
        with patch("rootfsgen.builds.sandbox.subprocess.run", side_effect=OSError("gone")):
            kill_container(ContainerRuntime.DOCKER, "rootfsgen-x")
