"""Integration tests for CLI exit codes and output.

Tests verify that:
- Stable exit codes (0 allowed, 1 denied, 2 invalid manifest, 3 bad config) are returned
- --json output is machine-readable
"""

import json
import os
from pathlib import Path

import pytest

from warden.cli.__main__ import main
from warden.cli.cli_common import ExitCode
from warden.observability.loguru_config import configure_loguru


@pytest.fixture(autouse=True)
def quiet_loguru():
    yield
    # The CLI binds a console sink to the captured stderr
    configure_loguru(enable_console=False, enable_files=False)


_VARS = (
    "WARDEN_CONFIG",
    "WARDEN_LIMITS_PRESET",
    "WARDEN_WORKSPACE",
    "WARDEN_CALLBACK_QUEUE_SIZE",
    "WARDEN_LOG_LEVEL",
    "WARDEN_LOG_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in _VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    yield
    # .env files are loaded straight into os.environ
    for var in _VARS:
        os.environ.pop(var, None)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir()
    return project


def write_manifest(path: Path, **permissions) -> Path:
    path.write_text(
        json.dumps({"name": "git-blame", "version": "1.0.0", "permissions": permissions}),
        encoding="utf-8",
    )
    return path


class TestCheckExitCodes:
    """``warden check`` exit codes."""

    def test_allowed(self, tmp_path: Path, project: Path, capsys):
        manifest = write_manifest(
            tmp_path / "plugin.json",
            capabilities=["filesystem.read"],
            allowedPaths=[str(project)],
        )

        exit_code = main(["check", str(manifest), "--read", str(project / "main.go")])

        assert exit_code == ExitCode.SUCCESS
        out = capsys.readouterr().out
        assert "Plugin git-blame: filesystem.read" in out
        assert f"✅ read {project / 'main.go'}" in out

    def test_denied(self, tmp_path: Path, project: Path, capsys):
        manifest = write_manifest(
            tmp_path / "plugin.json",
            capabilities=["filesystem.read"],
            allowedPaths=[str(project)],
        )

        exit_code = main(
            ["check", str(manifest), "--read", str(project / "main.go"), "--read", "/etc/passwd", "--json"]
        )

        assert exit_code == ExitCode.DENIED
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "denied"
        assert [result["allowed"] for result in data["results"]] == [True, False]
        assert "path not in allowed list" in data["results"][1]["reason"]

    def test_write_without_capability(self, tmp_path: Path, project: Path, capsys):
        manifest = write_manifest(tmp_path / "plugin.json", capabilities=["filesystem.read"])

        exit_code = main(["check", str(manifest), "--write", str(project / "out.txt"), "--json"])

        assert exit_code == ExitCode.DENIED
        result = json.loads(capsys.readouterr().out)["results"][0]
        assert "filesystem.write" in result["reason"]

    def test_network_and_capability_checks(self, tmp_path: Path, capsys):
        manifest = write_manifest(
            tmp_path / "plugin.json",
            capabilities=["network", "editor"],
            allowedHosts=["*.github.com"],
        )

        exit_code = main(
            [
                "check",
                str(manifest),
                "--host",
                "api.github.com:443",
                "--capability",
                "editor.buffer",
            ]
        )

        assert exit_code == ExitCode.SUCCESS
        out = capsys.readouterr().out
        assert "Requires user approval: network" in out
        assert "✅ network api.github.com:443" in out
        assert "✅ capability editor.buffer" in out

    def test_workspace_boundary(self, tmp_path: Path, project: Path):
        manifest = write_manifest(tmp_path / "plugin.json", capabilities=["filesystem.read"])

        assert main(["check", str(manifest), "--workspace", str(project), "--read", str(project / "a")]) == 0
        assert main(["check", str(manifest), "--workspace", str(project), "--read", "/etc/hosts"]) == 1

    def test_unknown_capability_is_invalid_manifest(self, tmp_path: Path, capsys):
        manifest = write_manifest(tmp_path / "plugin.json", capabilities=["telepathy"])

        exit_code = main(["check", str(manifest), "--json"])

        assert exit_code == ExitCode.INVALID_MANIFEST
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == "invalid"
        assert any("telepathy" in error for error in data["errors"])

    def test_unparseable_manifest(self, tmp_path: Path):
        manifest = tmp_path / "plugin.json"
        manifest.write_text("{not json", encoding="utf-8")

        assert main(["check", str(manifest)]) == ExitCode.INVALID_MANIFEST

    def test_yaml_manifest_missing_version(self, tmp_path: Path, capsys):
        manifest = tmp_path / "plugin.yaml"
        manifest.write_text("name: git-blame\n", encoding="utf-8")

        assert main(["check", str(manifest)]) == ExitCode.INVALID_MANIFEST
        assert "version" in capsys.readouterr().err


class TestInspectionCommands:
    def test_caps_list_high_risk(self, capsys):
        assert main(["caps", "list", "--high-risk", "--json"]) == 0

        names = [entry["name"] for entry in json.loads(capsys.readouterr().out)]
        assert names == sorted(["filesystem.write", "network", "process.spawn", "shell", "unsafe"])

    def test_caps_show(self, capsys):
        assert main(["caps", "show", "editor", "--json"]) == 0

        info = json.loads(capsys.readouterr().out)
        assert info["risk"] == "low"
        assert "editor.buffer" in info["children"]

    def test_caps_show_unknown(self):
        assert main(["caps", "show", "telepathy"]) == ExitCode.DENIED

    def test_limits(self, capsys):
        assert main(["limits", "STRICT", "--json"]) == 0
        strict = json.loads(capsys.readouterr().out)
        assert strict["max_goroutines"] < 10

        assert main(["limits"]) == 0
        out = capsys.readouterr().out
        assert "[strict]" in out and "[relaxed]" in out

    def test_limits_unknown_tier_is_usage_error(self):
        assert main(["limits", "paranoid"]) == 2

    def test_env_example(self, capsys):
        assert main(["env-example"]) == 0
        assert "WARDEN_LIMITS_PRESET=default" in capsys.readouterr().out


class TestPolicyCommand:
    def test_configured_plugin(self, tmp_path: Path, capsys):
        config = tmp_path / "warden.yaml"
        config.write_text(
            "plugins:\n"
            "  git-blame:\n"
            "    tier: relaxed\n"
            "    permissions:\n"
            "      capabilities: [filesystem.read, process.spawn]\n",
            encoding="utf-8",
        )

        assert main(["policy", "git-blame", "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["tier"] == "relaxed"
        assert data["permissions"]["capabilities"] == ["filesystem.read", "process.spawn"]
        assert data["approval_required"] == ["process.spawn"]

    def test_unconfigured_plugin_gets_preset(self, tmp_path: Path, capsys):
        (tmp_path / ".env").write_text("WARDEN_LIMITS_PRESET=strict\n", encoding="utf-8")

        assert main(["policy", "anything", "--json", "--config", str(tmp_path / "none.yaml")]) == 0
        assert json.loads(capsys.readouterr().out)["tier"] == "strict"

    def test_invalid_tier_is_config_error(self, tmp_path: Path):
        config = tmp_path / "custom.yaml"
        config.write_text("plugins:\n  git-blame:\n    tier: paranoid\n", encoding="utf-8")

        assert main(["policy", "git-blame", "--config", str(config)]) == ExitCode.CONFIG_ERROR

    def test_invalid_settings_is_config_error(self, tmp_path: Path):
        env_file = tmp_path / "bad.env"
        env_file.write_text("WARDEN_CALLBACK_QUEUE_SIZE=lots\n", encoding="utf-8")

        assert main(["policy", "git-blame", "--env-file", str(env_file)]) == ExitCode.CONFIG_ERROR
