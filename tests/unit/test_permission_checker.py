"""Tests for the per-plugin permission checker."""

import pickle
import threading

import pytest

from warden.core.policy import (
    REASON_HOST_BLOCKED,
    REASON_HOST_NOT_ALLOWED,
    REASON_NOT_GRANTED,
    REASON_OUTSIDE_WORKSPACE,
    REASON_PATH_BLOCKED,
    REASON_PATH_NOT_ALLOWED,
    CapabilityError,
    PermissionChecker,
    PermissionDeniedError,
    extract_host,
    is_within_path,
    match_host,
    normalize_path,
)
from warden.plugin_sdk.manifest import PermissionSet


@pytest.fixture
def checker():
    return PermissionChecker("test-plugin")


def denial(call, *args) -> CapabilityError:
    with pytest.raises(CapabilityError) as exc_info:
        call(*args)
    return exc_info.value


class TestCapabilityError:
    """Rendering of denial errors."""

    def test_str_with_operation(self):
        err = CapabilityError("filesystem.read", "read file", "path is blocked")
        assert str(err) == 'capability "filesystem.read" required for read file: path is blocked'

    def test_str_without_operation(self):
        err = CapabilityError("shell", "", "not granted")
        assert str(err) == 'capability "shell": not granted'

    def test_is_permission_denied(self):
        assert issubclass(CapabilityError, PermissionDeniedError)

    def test_pickles(self):
        err = pickle.loads(pickle.dumps(CapabilityError("network", "network request", "host is blocked")))
        assert (err.capability, err.operation, err.message) == ("network", "network request", "host is blocked")


class TestGrants:
    """Grant, revoke and hierarchy."""

    def test_parent_grant_implies_child(self, checker):
        checker.grant("editor")
        for cap in ("editor.buffer", "editor.cursor", "editor.lsp"):
            assert checker.has_capability(cap) is True
        assert checker.has_capability("filesystem.read") is False

    def test_grant_then_revoke(self, checker):
        checker.grant("network")
        assert checker.has_capability("network") is True
        checker.revoke("network")
        assert checker.has_capability("network") is False

    def test_revoke_unknown_is_noop(self, checker):
        checker.revoke("shell")
        assert checker.capabilities() == frozenset()

    def test_grant_all(self, checker):
        checker.grant_all(["shell", "clipboard"])
        assert checker.capabilities() == {"shell", "clipboard"}

    def test_check_capability(self, checker):
        err = denial(checker.check_capability, "editor.ui")
        assert err.capability == "editor.ui"
        assert err.operation == ""
        assert err.message == REASON_NOT_GRANTED

        checker.grant("editor")
        checker.check_capability("editor.ui")

    def test_plain_gates(self, checker):
        assert denial(checker.check_shell, "ls").operation == "shell command"
        assert denial(checker.check_process, "/usr/bin/git").capability == "process.spawn"
        assert denial(checker.check_clipboard, "paste").operation == "paste"

        checker.grant_all(["shell", "process.spawn", "clipboard"])
        checker.check_shell("ls")
        checker.check_process("/usr/bin/git")
        checker.check_clipboard("paste")

    def test_process_parent_grant(self, checker):
        checker.grant("process")
        checker.check_process("/usr/bin/git")


class TestFilesystem:
    """Path containment and precedence."""

    def test_read_requires_capability(self, checker):
        checker.allow_path("/tmp")
        err = denial(checker.check_file_read, "/tmp/a.txt")
        assert err.message == REASON_NOT_GRANTED
        assert err.operation == "read file"

    def test_blocked_beats_allowed(self, checker):
        checker.grant("filesystem.read")
        checker.allow_path("/tmp")
        checker.block_path("/tmp/secret")

        err = denial(checker.check_file_read, "/tmp/secret/data.txt")
        assert err.message == REASON_PATH_BLOCKED
        checker.check_file_read("/tmp/public.txt")

    def test_blocked_base_itself(self, checker):
        checker.grant("filesystem.read")
        checker.block_path("/tmp/secret")
        assert denial(checker.check_file_read, "/tmp/secret").message == REASON_PATH_BLOCKED

    def test_sibling_prefix_is_not_contained(self, checker):
        checker.grant("filesystem.read")
        checker.block_path("/tmp/blocked")

        checker.check_file_read("/tmp/blockedfiles/x")
        assert denial(checker.check_file_read, "/tmp/blocked/x").message == REASON_PATH_BLOCKED

    def test_dotdot_escapes_are_normalized(self, checker):
        checker.grant("filesystem.read")
        checker.allow_path("/srv/app")

        assert denial(checker.check_file_read, "/srv/app/../etc/passwd").message == REASON_PATH_NOT_ALLOWED
        checker.check_file_read("/srv/app/sub/../main.go")

    def test_not_in_allowed_list(self, checker):
        checker.grant("filesystem.read")
        checker.allow_path("/srv/app")
        assert denial(checker.check_file_read, "/srv/other/x").message == REASON_PATH_NOT_ALLOWED

    def test_workspace_boundary(self, checker):
        checker.grant("filesystem.read")
        checker.set_workspace_path("/home/dev/project")

        checker.check_file_read("/home/dev/project/src/main.py")
        assert denial(checker.check_file_read, "/home/dev/other").message == REASON_OUTSIDE_WORKSPACE

    def test_allow_list_overrides_workspace(self, checker):
        """The workspace only applies while no allowed paths are set."""
        checker.grant("filesystem.read")
        checker.set_workspace_path("/home/dev/project")
        checker.allow_path("/opt/shared")

        checker.check_file_read("/opt/shared/lib.py")
        assert denial(checker.check_file_read, "/home/dev/project/a.py").message == REASON_PATH_NOT_ALLOWED

    def test_no_lists_allows_everything(self, checker):
        checker.grant("filesystem.read")
        checker.check_file_read("/etc/hosts")

    def test_write_denials_carry_write_capability(self, checker):
        checker.grant_all(["filesystem.read", "filesystem.write"])
        checker.block_path("/etc")

        err = denial(checker.check_file_write, "/etc/passwd")
        assert err.capability == "filesystem.write"
        assert err.operation == "write file"
        assert err.message == REASON_PATH_BLOCKED

    def test_read_grant_does_not_allow_write(self, checker):
        checker.grant("filesystem.read")
        err = denial(checker.check_file_write, "/tmp/out.txt")
        assert (err.capability, err.message) == ("filesystem.write", REASON_NOT_GRANTED)

    def test_relative_paths_are_resolved_against_cwd(self, checker, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        checker.grant("filesystem.read")
        checker.set_workspace_path(".")
        checker.check_file_read("notes/todo.txt")


class TestNetwork:
    """Host extraction and matching."""

    @pytest.mark.parametrize(
        ("hostport", "host"),
        [
            ("[::1]:8080", "::1"),
            ("[2001:db8::1]:443", "2001:db8::1"),
            ("example.com:443", "example.com"),
            ("example.com", "example.com"),
            ("[::1]", "::1"),
            ("::1", "::1"),
            ("2001:db8::1", "2001:db8::1"),
            ("127.0.0.1:80", "127.0.0.1"),
        ],
    )
    def test_extract_host(self, hostport, host):
        assert extract_host(hostport) == host

    def test_match_host(self):
        assert match_host("api.example.com", "*.example.com") is True
        assert match_host("example.com", "*.example.com") is False
        assert match_host("badexample.com", "*.example.com") is False
        assert match_host("API.Example.com", "api.example.COM") is True

    def test_wildcard_allow(self, checker):
        checker.grant("network")
        checker.allow_host("*.example.com")

        checker.check_network("api.example.com")
        checker.check_network("deep.api.example.com:443")
        assert denial(checker.check_network, "example.com").message == REASON_HOST_NOT_ALLOWED
        assert denial(checker.check_network, "other.com").message == REASON_HOST_NOT_ALLOWED

    def test_blocked_host_beats_allowed(self, checker):
        checker.grant("network")
        checker.allow_host("*.example.com")
        checker.block_host("evil.example.com")

        err = denial(checker.check_network, "EVIL.example.com:8443")
        assert err.message == REASON_HOST_BLOCKED
        assert err.operation == "network request"

    def test_network_requires_capability(self, checker):
        assert denial(checker.check_network, "example.com").message == REASON_NOT_GRANTED

    def test_no_host_lists_allow_any(self, checker):
        checker.grant("network")
        checker.check_network("[2001:db8::1]:443")


class TestBulk:
    """Permission sets and reset."""

    def test_apply_permission_set_is_additive(self, checker):
        checker.grant("shell")
        checker.allow_path("/opt")
        checker.apply_permission_set(
            PermissionSet(
                capabilities=("filesystem.read", "network"),
                allowed_paths=("/srv",),
                blocked_hosts=("Tracker.example.com",),
            )
        )

        assert checker.capabilities() == {"shell", "filesystem.read", "network"}
        checker.check_file_read("/opt/a")
        checker.check_file_read("/srv/b")
        assert denial(checker.check_network, "tracker.example.com").message == REASON_HOST_BLOCKED

    def test_reset_clears_everything(self, checker):
        checker.grant_all(["filesystem.read", "network"])
        checker.block_path("/tmp")
        checker.allow_host("example.com")
        checker.set_workspace_path("/home/dev")
        checker.reset()

        assert checker.capabilities() == frozenset()
        checker.grant_all(["filesystem.read", "network"])
        checker.check_file_read("/tmp/x")
        checker.check_file_read("/var/log/syslog")
        checker.check_network("other.com")

    def test_editor_only_plugin_cannot_read_files(self, checker):
        """An editor-only plugin never passes a file check, whatever the path lists say."""
        checker.grant("editor")
        checker.allow_path("/home/dev/project")
        checker.set_workspace_path("/home/dev/project")

        for path in ("/home/dev/project/a.txt", "/etc/passwd", "relative.txt"):
            assert denial(checker.check_file_read, path).message == REASON_NOT_GRANTED


def test_is_within_path():
    assert is_within_path("/a/b/c", "/a/b") is True
    assert is_within_path("/a/b", "/a/b") is True
    assert is_within_path("/a/bc", "/a/b") is False
    assert is_within_path("/a", "/a/b") is False


def test_normalize_path():
    assert normalize_path("/a/b/../c/./d") == "/a/c/d"


def test_concurrent_grants_and_checks(checker):
    """Checks from many threads see a consistent state."""
    checker.grant("filesystem.read")
    checker.allow_path("/srv")
    errors: list[Exception] = []

    def reader():
        try:
            for _ in range(500):
                checker.check_file_read("/srv/data.txt")
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    def granter():
        for i in range(500):
            checker.grant(f"editor.extra{i}")
            checker.block_path(f"/var/blocked{i}")

    threads = [threading.Thread(target=reader) for _ in range(4)] + [threading.Thread(target=granter)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
