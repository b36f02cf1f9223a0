"""
tool_environment.py

Handle bundling an SDK location, a package-cache directory and process
    environment variables, used by analysis jobs to invoke dart/flutter
    tooling.
The pool only constructs and hands out these handles; what a job runs
    through them is up to the job. A custom factory with the same signature
    as `ToolEnvironment.create` can be given to the pool, e.g. one that
    primes the cache or wraps a richer analysis client.

Classes:
- Channel: stable or preview toolchain
- ToolEnvironment: the handle itself
- EnvironmentInitFailure: a tool environment could not be constructed
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Protocol, Sequence, Union

FilePath = Union[str, Path]


class EnvironmentInitFailure(RuntimeError):
    """
    Raised when a tool environment (or the cache directory backing it)
    cannot be set up, e.g. because an SDK directory is missing.
    Distinct from failures raised by the work run inside the environment.
    """


class Channel(str, Enum):
    STABLE = "stable"
    PREVIEW = "preview"

    @classmethod
    def parse(cls, value: Union["Channel", str]) -> "Channel":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(
                f"Unknown channel {value!r}, expected one of "
                f"{[c.value for c in cls]}"
            ) from None


@dataclass(frozen=True)
class ToolEnvironment:
    dart_sdk_dir: Path
    flutter_sdk_dir: Path
    pub_cache_dir: Path
    environment: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        *,
        dart_sdk_dir: FilePath,
        flutter_sdk_dir: FilePath,
        pub_cache_dir: FilePath,
        environment: Optional[Mapping[str, str]] = None,
    ) -> "ToolEnvironment":
        """
        Validate the SDK and cache locations and build a handle.

        :param dart_sdk_dir: Root of the Dart SDK.
        :param flutter_sdk_dir: Root of the Flutter SDK.
        :param pub_cache_dir: Package cache shared by every command run
            through this handle (exported as PUB_CACHE).
        :param environment: Extra environment variables for every command.
        :raises EnvironmentInitFailure: if any directory is missing.
        """
        dirs = {
            "Dart SDK": Path(dart_sdk_dir),
            "Flutter SDK": Path(flutter_sdk_dir),
            "pub cache": Path(pub_cache_dir),
        }
        for label, d in dirs.items():
            if not d.is_dir():
                raise EnvironmentInitFailure(f"{label} directory not found: {d}")

        env: Dict[str, str] = dict(environment or {})
        env["PUB_CACHE"] = str(dirs["pub cache"])
        return cls(
            dart_sdk_dir=dirs["Dart SDK"],
            flutter_sdk_dir=dirs["Flutter SDK"],
            pub_cache_dir=dirs["pub cache"],
            environment=env,
        )

    @property
    def dart_executable(self) -> Path:
        return self.dart_sdk_dir / "bin" / "dart"

    @property
    def flutter_executable(self) -> Path:
        return self.flutter_sdk_dir / "bin" / "flutter"

    def process_env(self) -> Dict[str, str]:
        """The current process environment overlaid with this handle's."""
        env = dict(os.environ)
        env.update(self.environment)
        return env

    def run_proc(
        self,
        args: Sequence[str],
        *,
        cwd: Optional[FilePath] = None,
        timeout: Optional[float] = None,
    ) -> subprocess.CompletedProcess:
        """
        Run a command with this handle's environment.
        Timeouts surface as `subprocess.TimeoutExpired` to the caller.
        """
        return subprocess.run(
            [str(a) for a in args],
            cwd=None if cwd is None else str(cwd),
            env=self.process_env(),
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )


class ToolEnvFactory(Protocol):
    def __call__(
        self,
        *,
        dart_sdk_dir: FilePath,
        flutter_sdk_dir: FilePath,
        pub_cache_dir: FilePath,
        environment: Optional[Mapping[str, str]] = None,
    ) -> ToolEnvironment: ...
