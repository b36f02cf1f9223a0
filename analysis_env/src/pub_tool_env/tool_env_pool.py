"""
tool_env_pool.py

Serialized, scoped access to a reusable tool environment.
Every analysis job needs a package-cache directory for its `pub get`/
    `pub upgrade` calls. Creating one from scratch means downloading all
    dependencies again, so the pool keeps a single ToolEnvRef alive and
    lets subsequent jobs reuse its cache until the ref runs out of its
    reuse budget (see tool_env_ref.py), then replaces it with a fresh one.
Concurrent dependency resolution against the same cache directory is not
    safe, so the pool admits exactly one caller at a time: retirement,
    lazy creation, the caller's work and the trailing size check all happen
    under the same admission gate.

Eviction is trailing: a ref that crosses its size ceiling during a job is
    only flagged; the next admission retires it before handing anything out.

Classes:
- ToolEnvPool: owns the live ToolEnvRef and the admission gate

Functions:
- get_default_pool / close_default_pool: explicit process-wide instance
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import logging
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import (
    Any, Awaitable, Callable, Dict, Iterator, Optional, Tuple, TypeVar,
    Union,
)

from .dir_size import calc_subdir_sizes, log_size_changes
from .sync_bridge import run_async_sync
from .tool_env_config import ToolEnvConfig, resolve_tool_env_config
from .tool_env_ref import ToolEnvRef, remove_tree
from .tool_environment import (
    Channel,
    EnvironmentInitFailure,
    ToolEnvFactory,
    ToolEnvironment,
)
from .utils.jsonl_log import append_jsonl

logger = logging.getLogger(__name__)

R = TypeVar("R")
ChannelLike = Union[Channel, str]

# pools admitted in the current thread or task
_HELD_POOLS: contextvars.ContextVar[Tuple["ToolEnvPool", ...]] = (
    contextvars.ContextVar("tool_env_held_pools", default=())
)


def _resolve_channel(
    channel: Optional[ChannelLike], uses_preview_sdk: bool
) -> Channel:
    if channel is None:
        return Channel.PREVIEW if uses_preview_sdk else Channel.STABLE
    return Channel.parse(channel)


class ToolEnvPool:
    """
    Hands out the stable or preview ToolEnvironment of the current cache
    generation, one caller at a time.

    Callers must not keep a ToolEnvironment (or its cache path) beyond
    their callback; the directory may be deleted on the next admission.
    The pool is not re-entrant: calling it from inside a callback raises
    RuntimeError instead of deadlocking.

    Example::

        with ToolEnvPool() as pool:
            result = pool.with_tool_env(
                "stable", lambda env: env.run_proc(["dart", "--version"]))
    """

    def __init__(
        self,
        config: Optional[ToolEnvConfig] = None,
        *,
        env_factory: Optional[ToolEnvFactory] = None,
        poll_interval: float = 0.05,
    ):
        """
        :param config: Effective settings; resolved from defaults/env if None.
        :param env_factory: Builds ToolEnvironments for new generations;
            defaults to `ToolEnvironment.create`.
        :param poll_interval: Seconds between admission attempts of async
            callers waiting for the gate.
        """
        if not isinstance(poll_interval, (int, float)) or poll_interval <= 0:
            raise ValueError(
                f"poll_interval must be a positive number, got {poll_interval}"
            )
        self.config: ToolEnvConfig = config or resolve_tool_env_config()
        self._env_factory = env_factory
        self._poll_interval = poll_interval

        self._gate = threading.Lock()
        self._current: Optional[ToolEnvRef] = None
        self._last_observed_sizes: Optional[Dict[str, int]] = None
        self._temp_base: Optional[Path] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False

    # -------- diagnostics --------

    @property
    def current_ref(self) -> Optional[ToolEnvRef]:
        return self._current

    @property
    def last_observed_sizes(self) -> Optional[Dict[str, int]]:
        if self._last_observed_sizes is None:
            return None
        return dict(self._last_observed_sizes)

    @property
    def temp_base(self) -> Optional[Path]:
        return self._temp_base

    @property
    def closed(self) -> bool:
        return self._closed

    # -------- scoped access --------

    @contextmanager
    def tool_env(
        self,
        channel: Optional[ChannelLike] = None,
        *,
        uses_preview_sdk: bool = False,
    ) -> Iterator[ToolEnvironment]:
        """
        Context manager form of `with_tool_env`: the block runs while the
        pool is held, and the cache size is re-checked when it exits.
        """
        ch = _resolve_channel(channel, uses_preview_sdk)
        self._check_not_held()
        logger.info(f"tool env requested ({ch.value})")
        with self._gate:
            token = _HELD_POOLS.set(_HELD_POOLS.get() + (self,))
            try:
                env = self._admit(ch)
                try:
                    yield env
                finally:
                    self._refresh_current()
            finally:
                _HELD_POOLS.reset(token)

    def with_tool_env(
        self,
        channel: Optional[ChannelLike] = None,
        fn: Optional[Callable[[ToolEnvironment], R]] = None,
        *,
        uses_preview_sdk: bool = False,
    ) -> R:
        """
        Call `fn` with the requested channel's ToolEnvironment, handling the
        lifecycle of the shared package cache.

        If `fn` returns an awaitable, it is run to completion before the
        cache size is checked.

        :param channel: "stable" or "preview"; None picks by
            `uses_preview_sdk`.
        :param fn: The work to run; its return value (or exception) is
            passed through unchanged.
        :raises EnvironmentInitFailure: if a new generation had to be
            created and could not be.
        """
        if fn is None:
            raise TypeError("with_tool_env() requires a callback")
        with self.tool_env(channel, uses_preview_sdk=uses_preview_sdk) as env:
            result: Any = fn(env)
            if inspect.isawaitable(result):
                result = run_async_sync(result)
            return result

    async def with_tool_env_async(
        self,
        channel: Optional[ChannelLike] = None,
        fn: Optional[Callable[[ToolEnvironment], Awaitable[R]]] = None,
        *,
        uses_preview_sdk: bool = False,
    ) -> R:
        """
        Async variant of `with_tool_env` for coroutine callbacks.

        Waiting for the gate does not hold any thread. Bookkeeping that
        touches the filesystem runs in the pool's own single worker thread.
        If the caller is cancelled, the size check and the gate release
        still happen (in the background).
        """
        if fn is None:
            raise TypeError("with_tool_env_async() requires a callback")
        ch = _resolve_channel(channel, uses_preview_sdk)
        self._check_not_held()
        logger.info(f"tool env requested ({ch.value})")
        loop = asyncio.get_running_loop()

        await self._acquire_gate_async()
        try:
            executor = self._get_executor()
            admit = executor.submit(self._admit, ch)
        except BaseException:
            self._gate.release()
            raise
        try:
            env = await asyncio.shield(asyncio.wrap_future(admit))
        except asyncio.CancelledError:
            # queued on the worker thread, independent of the event loop;
            # close() cannot shut the executor down while the gate is held
            admit.add_done_callback(
                lambda _: executor.submit(self._refresh_and_release)
            )
            raise
        except BaseException:
            self._gate.release()
            raise

        token = _HELD_POOLS.set(_HELD_POOLS.get() + (self,))
        try:
            result: Any = fn(env)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            _HELD_POOLS.reset(token)
            # keeps running (and releases the gate) even if we get cancelled
            await asyncio.shield(
                loop.run_in_executor(executor, self._refresh_and_release)
            )

    # -------- lifecycle --------

    def close(self) -> None:
        """
        Retire the live generation and remove the pool's temp directory.
        Waits for an in-flight caller to finish. Idempotent.
        """
        with self._gate:
            if self._closed:
                return
            self._closed = True
            if self._current is not None:
                self._retire_current()
            if self._temp_base is not None:
                remove_tree(self._temp_base)
                self._temp_base = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def __enter__(self) -> "ToolEnvPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -------- internals (gate must be held) --------

    def _admit(self, channel: Channel) -> ToolEnvironment:
        if self._closed:
            raise RuntimeError("ToolEnvPool is closed")
        if self._current is not None and not self._current.is_available:
            self._retire_current()
        if self._current is None:
            self._current = self._create_ref()
        ref = self._current
        ref.record_use()
        logger.info(
            f"({ref.id}) tool env fn() on {channel.value} "
            f"(use {ref.started_count}/{ref.max_count})"
        )
        return ref.environment(channel)

    def _create_ref(self) -> ToolEnvRef:
        temp_base = self._ensure_temp_base()
        sizes = calc_subdir_sizes([*self.config.scan_roots, temp_base])
        log_size_changes(self._last_observed_sizes, sizes)
        self._last_observed_sizes = sizes

        try:
            ref = ToolEnvRef.create(temp_base, self.config, self._env_factory)
        except EnvironmentInitFailure as e:
            self._record_event("init_failed", error=str(e))
            raise
        if self.config.report_sizes:
            ref.report_sizes(temp_base, self.config)
        self._record_event("created", ref)
        return ref

    def _ensure_temp_base(self) -> Path:
        if self._temp_base is None:
            try:
                self._temp_base = Path(tempfile.mkdtemp(
                    prefix="tool-env", dir=str(self.config.temp_root)
                ))
            except OSError as e:
                raise EnvironmentInitFailure(
                    f"Failed to create tool env temp dir under "
                    f"{self.config.temp_root}: {e}"
                ) from e
        return self._temp_base

    def _retire_current(self) -> None:
        ref = self._current
        self._current = None
        deleted = ref.retire()
        self._record_event("retired", ref, size=ref.last_size, deleted=deleted)

    def _refresh_current(self) -> None:
        ref = self._current
        if ref is None:
            return
        try:
            size = ref.refresh_size_and_check_limit()
        except Exception:
            logger.warning(
                f"({ref.id}) Failed to check pub cache dir size", exc_info=True
            )
            return
        if size is not None:
            self._record_event("size_checked", ref, size=size)

    def _check_not_held(self) -> None:
        # covers sync-in-async and asyncio.run-in-sync nesting too
        if any(p is self for p in _HELD_POOLS.get()):
            raise RuntimeError("ToolEnvPool is not re-entrant")

    def _refresh_and_release(self) -> None:
        try:
            self._refresh_current()
        finally:
            self._gate.release()

    async def _acquire_gate_async(self) -> None:
        while not self._gate.acquire(blocking=False):
            await asyncio.sleep(self._poll_interval)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._closed:
            raise RuntimeError("ToolEnvPool is closed")
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="tool-env-pool"
            )
        return self._executor

    def _record_event(
        self, event: str, ref: Optional[ToolEnvRef] = None, **extra: Any
    ) -> bool:
        if self.config.event_log_path is None:
            return False
        record: Dict[str, Any] = {"event": event, "ts": time.time()}
        if ref is not None:
            record.update(
                ref_id=ref.id,
                path=str(ref.cache_dir),
                started=ref.started_count,
            )
        record.update(extra)
        return append_jsonl(self.config.event_log_path, record)


# ---- Explicit process-wide instance

_DEFAULT_POOL: Optional[ToolEnvPool] = None
_DEFAULT_POOL_LOCK = threading.Lock()


def get_default_pool() -> ToolEnvPool:
    """
    Return the process-wide pool, creating it from the resolved
    configuration on first use (or after `close_default_pool`).
    """
    global _DEFAULT_POOL
    with _DEFAULT_POOL_LOCK:
        if _DEFAULT_POOL is None or _DEFAULT_POOL.closed:
            _DEFAULT_POOL = ToolEnvPool()
        return _DEFAULT_POOL


def close_default_pool() -> None:
    global _DEFAULT_POOL
    with _DEFAULT_POOL_LOCK:
        pool, _DEFAULT_POOL = _DEFAULT_POOL, None
    if pool is not None:
        pool.close()
