"""
tool_env_ref.py

One generation of the reusable package cache.
A ToolEnvRef owns a uniquely named temp directory used as the package
    cache, together with a stable and a preview ToolEnvironment that both
    point at it. Subsequent analysis jobs reuse the same ref (and thus the
    already downloaded dependencies) until either `max_count` uses were
    granted or, after some use, the directory grew above `max_size_bytes`.
    Once ineligible, the pool retires the ref and its directory is deleted.
ToolEnvRef does no locking of its own; ToolEnvPool serializes every call.

Classes:
- ToolEnvRef: cache directory + environments + use stats

Functions:
- remove_tree: best-effort recursive delete with retries
"""

from __future__ import annotations

import itertools
import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

from tenacity import (
    retry, stop_after_attempt, wait_exponential, retry_if_exception_type
)

from .dir_size import calc_directory_size, format_mb
from .tool_env_config import MAX_COUNT, MAX_SIZE_BYTES, ToolEnvConfig
from .tool_environment import (
    Channel,
    EnvironmentInitFailure,
    ToolEnvFactory,
    ToolEnvironment,
)

logger = logging.getLogger(__name__)

FilePath = Union[str, Path]

# ids are only used to correlate log lines of one generation
_NEXT_ID = itertools.count()

# retry config for directory deletion
TENACITY_CONFIG = {
    "retry": retry_if_exception_type(OSError),
    "stop": stop_after_attempt(3),
    "wait": wait_exponential(multiplier=0.1, min=0.1, max=1),
    "reraise": True,
}


@retry(**TENACITY_CONFIG)
def _rmtree(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)


def remove_tree(path: FilePath) -> bool:
    """
    Recursively delete a directory, retrying transient failures.
    Never raises: a directory that cannot be removed is logged and left for
        external temp cleanup.

    :return: True if the directory is gone afterwards (including when it
        did not exist in the first place), False otherwise.
    """
    path = Path(path)
    try:
        _rmtree(path)
    except OSError as e:
        logger.warning(f"Failed to delete directory {path}: {e}")
        return False
    return True


class ToolEnvRef:
    """
    Tracks the temp package-cache directory and the ToolEnvironments
    initialized with it, along with its use stats.

    Lifecycle: created -> active (uses recorded) -> ineligible (use count
    or size limit crossed) -> retired (directory deleted). Crossing the size
    limit only sets a flag; retirement happens when the pool next admits a
    caller, so the directory is never pulled from under a running job.
    """

    def __init__(
        self,
        cache_dir: Path,
        stable: ToolEnvironment,
        preview: ToolEnvironment,
        *,
        max_count: int = MAX_COUNT,
        max_size_bytes: int = MAX_SIZE_BYTES,
    ):
        self.id: int = next(_NEXT_ID)
        self.cache_dir: Path = cache_dir
        self.stable: ToolEnvironment = stable
        self.preview: ToolEnvironment = preview
        self.max_count = max_count
        self.max_size_bytes = max_size_bytes
        self.started_count: int = 0
        self.is_above_size_limit: bool = False
        self.last_size: Optional[int] = None
        self.is_retired: bool = False

    @classmethod
    def create(
        cls,
        temp_base: FilePath,
        config: ToolEnvConfig,
        env_factory: Optional[ToolEnvFactory] = None,
    ) -> "ToolEnvRef":
        """
        Create a new generation: a fresh cache directory under `temp_base`
        and the stable/preview environments bound to it.

        :param temp_base: Parent directory for the cache directory.
        :param config: SDK locations and reuse limits.
        :param env_factory: Builds each ToolEnvironment; defaults to
            `ToolEnvironment.create`.
        :raises EnvironmentInitFailure: if the directory or either
            environment cannot be created. The directory is removed first.
        """
        factory = env_factory or ToolEnvironment.create
        try:
            cache_dir = Path(
                tempfile.mkdtemp(prefix="pub-cache-dir", dir=str(temp_base))
            ).resolve()
        except OSError as e:
            raise EnvironmentInitFailure(
                f"Failed to create package cache directory under {temp_base}: {e}"
            ) from e

        logger.info(f"Creating new tool env in {cache_dir}")
        try:
            if config.strip_flutter_git:
                # turns off flutter auto-upgrade checks and its growing .git
                remove_tree(config.stable_flutter_sdk_dir / ".git")
                remove_tree(config.preview_flutter_sdk_dir / ".git")
            stable = factory(
                dart_sdk_dir=config.stable_dart_sdk_dir,
                flutter_sdk_dir=config.stable_flutter_sdk_dir,
                pub_cache_dir=cache_dir,
                environment={"FLUTTER_ROOT": str(config.stable_flutter_sdk_dir)},
            )
            preview = factory(
                dart_sdk_dir=config.preview_dart_sdk_dir,
                flutter_sdk_dir=config.preview_flutter_sdk_dir,
                pub_cache_dir=cache_dir,
                environment={"FLUTTER_ROOT": str(config.preview_flutter_sdk_dir)},
            )
        except Exception as e:
            remove_tree(cache_dir)
            if isinstance(e, EnvironmentInitFailure):
                raise
            raise EnvironmentInitFailure(
                f"Failed to initialize tool environment: {e}"
            ) from e

        return cls(
            cache_dir,
            stable,
            preview,
            max_count=config.max_count,
            max_size_bytes=config.max_size_bytes,
        )

    @property
    def is_available(self) -> bool:
        return (
            not self.is_retired
            and self.started_count < self.max_count
            and not self.is_above_size_limit
        )

    def environment(self, channel: Union[Channel, str]) -> ToolEnvironment:
        if Channel.parse(channel) is Channel.PREVIEW:
            return self.preview
        return self.stable

    def record_use(self) -> None:
        self.started_count += 1

    def refresh_size_and_check_limit(self) -> Optional[int]:
        """
        Measure the cache directory and flag the ref once it is above the
        size limit. The flag is never cleared, so once set the (potentially
        slow) measurement is skipped.

        :return: The measured size, or None if the measurement was skipped.
        """
        if self.is_above_size_limit:
            return None
        size = calc_directory_size(self.cache_dir)
        self.last_size = size
        logger.info(f"({self.id}) Current size of pub cache dir: {size}")
        if size > self.max_size_bytes:
            logger.info(
                f"({self.id}) Pub cache dir is above the size limit "
                f"({size} > {self.max_size_bytes}), retiring on next use"
            )
            self.is_above_size_limit = True
        return size

    def retire(self) -> bool:
        """
        Delete the cache directory. Safe to call more than once.

        :return: False if the directory could not be deleted (logged).
        """
        self.is_retired = True
        logger.info(
            f"({self.id}) Deleting pub cache dir: {self.cache_dir} "
            f"(uses: {self.started_count}, last size: {self.last_size})"
        )
        return remove_tree(self.cache_dir)

    def report_sizes(self, temp_base: FilePath, config: ToolEnvConfig) -> None:
        """Log the sizes of the directories this generation touches."""
        pub_cache = calc_directory_size(self.cache_dir)
        temp = calc_directory_size(temp_base)
        tool = calc_directory_size(config.tool_dir)
        logger.info(
            f"({self.id}) Directory sizes: "
            f"{format_mb(pub_cache)} pub cache, "
            f"{format_mb(temp)} tool env temp, "
            f"{format_mb(tool)} tool SDK dir."
        )
        sdks = [
            config.stable_dart_sdk_dir,
            config.stable_flutter_sdk_dir,
            config.preview_dart_sdk_dir,
            config.preview_flutter_sdk_dir,
        ]
        logger.info(
            f"({self.id}) SDK directory sizes: "
            + " / ".join(format_mb(calc_directory_size(d)) for d in sdks)
        )

    def __repr__(self) -> str:
        return (
            f"ToolEnvRef(id={self.id}, cache_dir={str(self.cache_dir)!r}, "
            f"started={self.started_count}, "
            f"above_size_limit={self.is_above_size_limit})"
        )
