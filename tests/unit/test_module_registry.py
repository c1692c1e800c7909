"""Tests for capability-gated API module injection."""

import pytest

from warden.core.policy import PermissionChecker
from warden.core.registry import ModuleRegistry, ModuleRegistryError
from warden.plugin_sdk.types import Module, ScriptRuntime


class FakeRuntime:
    def __init__(self):
        self.globals = {}
        self.closed = False

    def set_global(self, name, value):
        self.globals[name] = value

    def close(self):
        self.closed = True


class FakeModule:
    def __init__(self, name, required_capability=None):
        self.name = name
        self.required_capability = required_capability

    def register(self, runtime):
        runtime.set_global(f"_ws_{self.name}", self.name)


@pytest.fixture
def registry():
    registry = ModuleRegistry()
    registry.register(FakeModule("log"))
    registry.register(FakeModule("buf", "editor.buffer"))
    registry.register(FakeModule("cursor", "editor.cursor"))
    registry.register(FakeModule("http", "network"))
    return registry


@pytest.fixture
def checker():
    checker = PermissionChecker("test-plugin")
    checker.grant("editor")
    return checker


def test_fakes_satisfy_protocols():
    assert isinstance(FakeRuntime(), ScriptRuntime)
    assert isinstance(FakeModule("x"), Module)


def test_register_and_lookup(registry):
    assert registry.list() == ["buf", "cursor", "http", "log"]
    assert len(registry) == 4
    assert "buf" in registry
    assert registry.get("buf").required_capability == "editor.buffer"
    assert registry.get("missing") is None


def test_duplicate_rejected(registry):
    with pytest.raises(ModuleRegistryError, match="already registered"):
        registry.register(FakeModule("buf"))


def test_inject_all_respects_capabilities(registry, checker):
    runtime = FakeRuntime()

    injected = registry.inject_all(runtime, checker)

    # "editor" implies its children
    assert injected == ["buf", "cursor", "log"]
    assert set(runtime.globals) == {"_ws_buf", "_ws_cursor", "_ws_log"}


def test_inject_all_without_checker(registry):
    runtime = FakeRuntime()
    assert registry.inject_all(runtime, None) == ["log"]


def test_inject_named(registry, checker):
    runtime = FakeRuntime()
    registry.inject(runtime, checker, "cursor", "log")
    assert set(runtime.globals) == {"_ws_cursor", "_ws_log"}


def test_inject_unknown_module(registry, checker):
    with pytest.raises(ModuleRegistryError, match="not found"):
        registry.inject(FakeRuntime(), checker, "nope")


def test_inject_unauthorized_installs_nothing(registry, checker):
    runtime = FakeRuntime()

    with pytest.raises(ModuleRegistryError, match="requires capability 'network'"):
        registry.inject(runtime, checker, "log", "http")

    assert runtime.globals == {}
