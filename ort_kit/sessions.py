"""
Bounded cache of loaded inference sessions.

Sessions are keyed by resolved model path and evicted oldest-inserted-first
when either the session count or the estimated memory budget would be
exceeded. Insertion order stands in for recency: the cache churns over the
handful of installed models, not over individual requests.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

from .backends.base import InferenceBackend, SessionHandle, SessionOptions
from .errors import CapacityError, ResourceError

LOGGER = logging.getLogger(__name__)

PathLike = Union[str, Path]

DEFAULT_MAX_SESSIONS = 4
DEFAULT_MAX_MEMORY_BYTES = 4 * 1024 ** 3
# Loaded graphs typically take more memory than the file on disk.
DEFAULT_MEMORY_MULTIPLIER = 1.5


class SessionManager:
    """
    Owns every session it creates. All cache reads and writes happen under one
    lock per instance, so concurrent callers asking for the same model share
    one session and the memory accounting cannot drift.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        *,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        max_memory_bytes: Optional[int] = DEFAULT_MAX_MEMORY_BYTES,
        memory_multiplier: float = DEFAULT_MEMORY_MULTIPLIER,
        default_options: SessionOptions = SessionOptions(),
    ) -> None:
        if max_sessions <= 0:
            raise ValueError("max_sessions must be > 0")
        if max_memory_bytes is not None and max_memory_bytes <= 0:
            raise ValueError("max_memory_bytes must be > 0")
        if memory_multiplier <= 0:
            raise ValueError("memory_multiplier must be > 0")

        self.backend = backend
        self.max_sessions = int(max_sessions)
        self.max_memory_bytes = max_memory_bytes
        self.memory_multiplier = float(memory_multiplier)
        self.default_options = default_options

        self._lock = threading.RLock()
        self._cache: "OrderedDict[str, SessionHandle]" = OrderedDict()
        self._memory_in_use = 0

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #
    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def __contains__(self, model_path: object) -> bool:
        if not isinstance(model_path, (str, Path)):
            return False
        with self._lock:
            return self._key(model_path) in self._cache

    @property
    def memory_in_use(self) -> int:
        with self._lock:
            return self._memory_in_use

    def cached_paths(self) -> List[str]:
        """Cached model paths, oldest first."""
        with self._lock:
            return list(self._cache.keys())

    # ------------------------------------------------------------------ #
    # Cache operations
    # ------------------------------------------------------------------ #
    @staticmethod
    def _key(model_path: PathLike) -> str:
        return str(Path(model_path).resolve())

    def estimate_bytes(self, model_path: PathLike) -> int:
        return int(os.stat(model_path).st_size * self.memory_multiplier)

    def get_or_create(self, model_path: PathLike, options: Optional[SessionOptions] = None) -> SessionHandle:
        """
        Return the cached session for `model_path`, creating it if needed.

        Evictions are planned before the new session is created but only carried
        out once creation succeeded, so a failing create leaves the cache and
        the accounting exactly as they were.
        """

        key = self._key(model_path)
        with self._lock:
            handle = self._cache.get(key)
            if handle is not None:
                LOGGER.debug("Session cache hit for %s", key)
                return handle

            estimated = self.estimate_bytes(key)
            if self.max_memory_bytes is not None and estimated > self.max_memory_bytes:
                raise CapacityError(
                    f"Model {key} needs ~{estimated} bytes, more than the {self.max_memory_bytes} byte budget."
                )

            victims = self._plan_evictions(estimated)
            handle = self.backend.create_session(key, options or self.default_options)
            handle.estimated_bytes = estimated

            for victim in victims:
                LOGGER.info("Evicting session %s (%d bytes)", victim.model_path, victim.estimated_bytes)
                self._drop(victim)
                try:
                    self._dispose(victim)
                except Exception:
                    LOGGER.exception("Failed to release evicted session %s", victim.model_path)

            self._cache[key] = handle
            self._memory_in_use += estimated
            LOGGER.info(
                "Created session %s (~%d bytes); %d cached, %d bytes in use",
                key,
                estimated,
                len(self._cache),
                self._memory_in_use,
            )
            return handle

    def _plan_evictions(self, incoming_bytes: int) -> List[SessionHandle]:
        victims: List[SessionHandle] = []
        count = len(self._cache)
        memory = self._memory_in_use
        for handle in self._cache.values():
            fits_count = count + 1 <= self.max_sessions
            fits_memory = self.max_memory_bytes is None or memory + incoming_bytes <= self.max_memory_bytes
            if fits_count and fits_memory:
                break
            victims.append(handle)
            count -= 1
            memory -= handle.estimated_bytes
        return victims

    def _drop(self, handle: SessionHandle) -> bool:
        """
        Remove `handle` from the cache and, if its file is still there, from the
        accounting. Returns False when `handle` was not cached.
        """

        key = self._key(handle.model_path)
        if self._cache.get(key) is not handle:
            return False
        del self._cache[key]

        try:
            os.stat(handle.model_path)
        except OSError as exc:
            err = ResourceError(f"Model file for session {handle.model_path} is not accessible: {exc}")
            LOGGER.warning("%s; memory accounting not updated", err)
            return True
        self._memory_in_use = max(0, self._memory_in_use - handle.estimated_bytes)
        return True

    def _dispose(self, handle: SessionHandle) -> None:
        """Tear down an uncached session now, or when its last lease ends."""

        if handle.in_use > 0:
            handle.release_pending = True
            LOGGER.debug("Session %s still in use by %d task(s); release deferred", handle.model_path, handle.in_use)
            return
        handle.release_pending = False
        self.backend.release(handle)

    @contextmanager
    def lease(self, model_path: PathLike, options: Optional[SessionOptions] = None) -> Iterator[SessionHandle]:
        """
        Hold the session for `model_path` for the duration of one task.

        The session may be evicted from the cache meanwhile, but it is not torn
        down until every lease on it has ended.
        """

        with self._lock:
            handle = self.get_or_create(model_path, options)
            handle.in_use += 1
        try:
            yield handle
        finally:
            with self._lock:
                handle.in_use -= 1
                if handle.in_use == 0 and handle.release_pending:
                    LOGGER.info("Releasing deferred session %s", handle.model_path)
                    self._dispose(handle)

    def release(self, handle: SessionHandle) -> None:
        """Tear down one cached session and forget it. Uncached handles are left alone."""

        with self._lock:
            if not self._drop(handle):
                LOGGER.debug("Session %s is not cached; nothing to release", handle.model_path)
                return
            self._dispose(handle)
            LOGGER.info("Released session %s", handle.model_path)

    def release_all(self) -> None:
        """Tear down every cached session and reset the accounting."""

        with self._lock:
            handles = list(self._cache.values())
            self._cache.clear()
            self._memory_in_use = 0

            first_error: Optional[BaseException] = None
            for handle in handles:
                try:
                    self._dispose(handle)
                except Exception as exc:
                    LOGGER.exception("Failed to release session %s", handle.model_path)
                    if first_error is None:
                        first_error = exc
            LOGGER.info("Released %d sessions", len(handles))
            if first_error is not None:
                raise first_error

    def __enter__(self) -> "SessionManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.release_all()
