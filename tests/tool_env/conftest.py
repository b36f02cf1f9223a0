import os

import pytest

from pub_tool_env.tool_env_config import (
    reset_tool_env_defaults,
    resolve_tool_env_config,
)
from pub_tool_env.tool_environment import ToolEnvironment


@pytest.fixture(autouse=True)
def clean_tool_env_settings(monkeypatch):
    """Isolate tests from TOOL_ENV_* variables and programmatic defaults."""
    for var in list(os.environ):
        if var.startswith("TOOL_ENV_"):
            monkeypatch.delenv(var, raising=False)
    reset_tool_env_defaults()
    yield
    reset_tool_env_defaults()


@pytest.fixture
def tool_dir(tmp_path):
    """Provides a fake SDK layout: <tool>/{stable,preview}/{dart-sdk,flutter}."""
    root = tmp_path / "tool"
    for channel in ("stable", "preview"):
        for sdk in ("dart-sdk", "flutter"):
            (root / channel / sdk / "bin").mkdir(parents=True)
    return root


@pytest.fixture
def temp_root(tmp_path):
    """Provides the directory under which the pool creates its temp base."""
    d = tmp_path / "tmp"
    d.mkdir()
    return d


@pytest.fixture
def make_config(tool_dir, temp_root):
    """Builds a ToolEnvConfig against the fake SDK layout."""
    def _make(**overrides):
        kwargs = dict(
            tool_dir=tool_dir,
            temp_root=temp_root,
            scan_roots=(),
            report_sizes=False,
        )
        kwargs.update(overrides)
        return resolve_tool_env_config(**kwargs)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


class RecordingFactory:
    """ToolEnvironment factory that records calls and can fail on demand."""

    def __init__(self, fail_on_call=None, error=None):
        self.calls = []
        self.fail_on_call = fail_on_call
        self.error = error or OSError("sdk unusable")

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise self.error
        return ToolEnvironment.create(**kwargs)


@pytest.fixture
def recording_factory():
    return RecordingFactory()


@pytest.fixture
def write_file():
    """Writes `n` filler bytes to a path, creating parent directories."""
    def _write(path, n):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"x" * n)
        return path
    return _write


@pytest.fixture
def factory_cls():
    return RecordingFactory
