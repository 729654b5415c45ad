"""Tests for the remote execution channel and docker argv builders."""

from __future__ import annotations

import stat
import subprocess
from pathlib import Path

import pytest

from dockroll.bridge import docker_commands
from dockroll.bridge.channel import (
    ChannelError,
    CommandTimeout,
    ConnectionFailed,
    ExecResult,
    LocalChannel,
    RemoteChannel,
    Session,
    SshChannel,
)
from dockroll.models.artifacts import ArtifactReference
from dockroll.models.targets import DeploymentTarget, RuntimeConfiguration


class FakeRunner:
    """Scripted stand-in for ``subprocess.run``; default result is success."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls: list[list[str]] = []
        self.on_call = None

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        if self.on_call is not None:
            self.on_call(argv)
        result = self.results.pop(0) if self.results else (0, "", "")
        if isinstance(result, Exception):
            raise result
        code, stdout, stderr = result
        return subprocess.CompletedProcess(argv, code, stdout, stderr)


def _identity_path(argv: list[str]) -> Path:
    return Path(argv[argv.index("-i") + 1])


class TestExecResult:
    def test_ok(self):
        assert ExecResult(exit_status=0).ok
        assert not ExecResult(exit_status=1).ok

    def test_summary_prefers_stderr_and_truncates(self):
        result = ExecResult(exit_status=1, stdout="out", stderr="x" * 500)
        summary = result.summary(limit=50)
        assert summary.startswith("exit 1: xxx")
        assert summary.endswith("...")
        assert len(summary) <= len("exit 1: ") + 50

    def test_summary_without_output(self):
        assert ExecResult(exit_status=3).summary() == "exit 3"


class TestSshChannel:
    def test_protocol_conformance(self):
        assert isinstance(SshChannel(), RemoteChannel)
        assert isinstance(LocalChannel(), RemoteChannel)

    def test_session_lifecycle(self, target: DeploymentTarget):
        runner = FakeRunner((0, "", ""), (0, "pulled\n", ""), (0, "", ""))
        channel = SshChannel(runner=runner, connect_timeout=7)
        with channel.connect(target) as session:
            assert isinstance(session, Session)
            result = session.execute(["docker", "pull", "user/vpn-api:latest"])
        assert result.ok and result.stdout == "pulled\n"

        open_argv, exec_argv, close_argv = runner.calls
        assert open_argv[0] == "ssh"
        assert "ControlMaster=auto" in open_argv
        assert "BatchMode=yes" in open_argv
        assert "ConnectTimeout=7" in open_argv
        assert "StrictHostKeyChecking=yes" in open_argv
        assert open_argv[-3:] == ["deploy@203.0.113.10", "--", "true"]
        assert exec_argv[-3:] == [
            "deploy@203.0.113.10",
            "--",
            "docker pull user/vpn-api:latest",
        ]
        assert close_argv[-3:] == ["-O", "exit", "deploy@203.0.113.10"]

    def test_commands_share_one_control_socket(self, target):
        runner = FakeRunner()
        with SshChannel(runner=runner).connect(target) as session:
            session.execute(["docker", "stop", "vpn-api-container"])
            session.execute(["docker", "rm", "vpn-api-container"])
        control = {arg for argv in runner.calls for arg in argv if arg.startswith("ControlPath=")}
        assert len(control) == 1

    def test_remote_command_is_shell_quoted(self, target):
        runner = FakeRunner()
        with SshChannel(runner=runner).connect(target) as session:
            session.execute(docker_commands.inspect_image_id("vpn-api-container"))
        assert runner.calls[1][-1] == "docker inspect --format '{{.Image}}' vpn-api-container"

    def test_private_key_written_0600_and_removed(self, target):
        runner = FakeRunner()
        seen: dict[str, object] = {}
        with SshChannel(runner=runner).connect(target) as session:
            key_path = _identity_path(runner.calls[0])
            seen["mode"] = stat.S_IMODE(key_path.stat().st_mode)
            seen["content"] = key_path.read_text()
            session.execute(["true"])
        assert seen["mode"] == 0o600
        assert str(seen["content"]).endswith("-----END OPENSSH PRIVATE KEY-----\n")
        assert not key_path.exists()
        assert "IdentitiesOnly=yes" in runner.calls[0]

    def test_identity_file_used_as_is(self, tmp_path):
        key = tmp_path / "id_ed25519"
        key.write_text("key\n")
        target = DeploymentTarget(
            host="h.example", username="u", container_name="svc", identity_file=key, port=2222
        )
        runner = FakeRunner()
        with SshChannel(runner=runner).connect(target):
            pass
        assert _identity_path(runner.calls[0]) == key
        assert runner.calls[0][1:3] == ["-p", "2222"]

    def test_accept_new_host_keys_when_not_strict(self, target):
        runner = FakeRunner()
        with SshChannel(runner=runner, strict_host_key_checking=False).connect(target):
            pass
        assert "StrictHostKeyChecking=accept-new" in runner.calls[0]

    def test_known_hosts_file(self, target, tmp_path):
        runner = FakeRunner()
        known = tmp_path / "known_hosts"
        with SshChannel(runner=runner, known_hosts_path=known).connect(target):
            pass
        assert f"UserKnownHostsFile={known}" in runner.calls[0]

    def test_connect_failure(self, target):
        runner = FakeRunner((255, "", "Permission denied (publickey)."))
        with pytest.raises(ConnectionFailed, match="Permission denied"):
            with SshChannel(runner=runner).connect(target):
                pytest.fail("session must not open")
        assert len(runner.calls) == 1

    def test_connect_timeout(self, target):
        runner = FakeRunner(subprocess.TimeoutExpired(["ssh"], 20))
        with pytest.raises(ConnectionFailed, match="Timed out"):
            with SshChannel(runner=runner).connect(target):
                pass

    def test_missing_ssh_binary(self, target):
        runner = FakeRunner(FileNotFoundError("ssh"))
        with pytest.raises(ConnectionFailed, match="Cannot run ssh"):
            with SshChannel(runner=runner).connect(target):
                pass

    def test_non_zero_exit_is_returned(self, target):
        runner = FakeRunner((0, "", ""), (1, "", "No such container: vpn-api-container"))
        with SshChannel(runner=runner).connect(target) as session:
            result = session.execute(["docker", "stop", "vpn-api-container"])
        assert result.exit_status == 1
        assert "No such container" in result.stderr

    def test_exit_255_means_connection_lost(self, target):
        runner = FakeRunner((0, "", ""), (255, "", "Connection reset by peer"))
        with pytest.raises(ConnectionFailed, match="lost"):
            with SshChannel(runner=runner).connect(target) as session:
                session.execute(["docker", "run", "-d", "img"])
        assert runner.calls[-1][-3:-1] == ["-O", "exit"]

    def test_command_timeout(self, target):
        runner = FakeRunner((0, "", ""), subprocess.TimeoutExpired(["ssh"], 5))
        with SshChannel(runner=runner).connect(target) as session:
            with pytest.raises(CommandTimeout) as excinfo:
                session.execute(["docker", "pull", "user/vpn-api:latest"], timeout=5)
        assert excinfo.value.timeout == 5
        assert excinfo.value.command == ["docker", "pull", "user/vpn-api:latest"]

    def test_closed_session_refuses_commands(self, target):
        runner = FakeRunner()
        with SshChannel(runner=runner).connect(target) as session:
            pass
        with pytest.raises(ChannelError):
            session.execute(["true"])

    def test_close_failure_is_only_logged(self, target):
        runner = FakeRunner((0, "", ""), subprocess.TimeoutExpired(["ssh"], 10))
        with SshChannel(runner=runner).connect(target):
            pass
        assert len(runner.calls) == 2


class TestLocalChannel:
    def test_runs_argv_directly(self, target):
        runner = FakeRunner((0, "abc\n", ""))
        with LocalChannel(runner=runner).connect(target) as session:
            result = session.execute(["docker", "ps"])
        assert runner.calls == [["docker", "ps"]]
        assert result.stdout == "abc\n"

    def test_missing_executable_is_127(self, target):
        runner = FakeRunner(FileNotFoundError("docker"))
        with LocalChannel(runner=runner).connect(target) as session:
            result = session.execute(["docker", "ps"])
        assert result.exit_status == 127

    def test_timeout(self, target):
        runner = FakeRunner(subprocess.TimeoutExpired(["docker"], 1))
        with LocalChannel(runner=runner).connect(target) as session:
            with pytest.raises(CommandTimeout):
                session.execute(["docker", "pull", "x"], timeout=1)


class TestDockerCommands:
    def test_pull_uses_digest_when_pinned(self):
        ref = ArtifactReference.parse("user/vpn-api:latest").with_digest("sha256:" + "a" * 64)
        assert docker_commands.pull(ref) == ["docker", "pull", f"user/vpn-api@sha256:{'a' * 64}"]

    def test_stop_and_remove(self):
        assert docker_commands.stop("svc") == ["docker", "stop", "svc"]
        assert docker_commands.remove("svc") == ["docker", "rm", "svc"]
        assert docker_commands.remove("svc", force=True) == ["docker", "rm", "-f", "svc"]

    def test_run_passes_configuration_verbatim(self):
        config = RuntimeConfiguration(
            network="vpn-net",
            network_alias="vpn-api",
            restart_policy="unless-stopped",
            extra_hosts={"host.docker.internal": "host-gateway"},
            env_file="/home/deploy/vpn-api.env",
            published_ports=["127.0.0.1:8080:8080"],
        )
        argv = docker_commands.run("vpn-api-container", "user/vpn-api:latest", config)
        assert argv == [
            "docker", "run", "-d",
            "--name", "vpn-api-container",
            "--add-host", "host.docker.internal:host-gateway",
            "--network", "vpn-net",
            "--network-alias", "vpn-api",
            "--restart", "unless-stopped",
            "--env-file", "/home/deploy/vpn-api.env",
            "-p", "127.0.0.1:8080:8080",
            "user/vpn-api:latest",
        ]

    def test_run_minimal(self):
        argv = docker_commands.run("svc", "sha256:" + "b" * 64, RuntimeConfiguration())
        assert argv == [
            "docker", "run", "-d", "--name", "svc", "--restart", "unless-stopped",
            "sha256:" + "b" * 64,
        ]
