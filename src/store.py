"""Path-keyed access to the hosted realtime store.

Every component of the scanner service reads and writes its collections
(``devices``, ``scans``, ``inventory``, ``attendance``) through the small
contract defined here:

- ``get(path)``: value stored at ``path`` or ``None``
- ``set(path, value)``: replace the value at ``path``
- ``update(path, values)``: multi-path partial update relative to ``path``
- ``push_key(path)``: a new unique, chronologically sortable child key

``ConvexStore`` backs the contract with a Convex deployment; ``MemoryStore``
keeps everything in-process for local runs and tests.
"""

from __future__ import annotations

import copy
import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from typing import Any, Callable, Protocol, TypeVar

import convex

logger = logging.getLogger(__name__)

T = TypeVar("T")

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class StoreError(Exception):
    """Base class for backing store failures."""


class StoreUnavailable(StoreError):
    """The store is not configured, the circuit is open, or a call failed."""


class StoreTimeout(StoreUnavailable):
    """A store call did not finish within its timeout."""


class CircuitOpen(StoreUnavailable):
    """Calls are being skipped while the circuit breaker is open."""


class Store(Protocol):
    def get(self, path: str, timeout: float | None = None) -> Any: ...

    def set(self, path: str, value: Any, timeout: float | None = None) -> None: ...

    def update(
        self, path: str, values: dict[str, Any], timeout: float | None = None
    ) -> None: ...

    def push_key(self, path: str) -> str: ...

    def close(self) -> None: ...


def split_path(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def join_path(*parts: str) -> str:
    return "/".join(part.strip("/") for part in parts if part and part.strip("/"))


class PushKeyGenerator:
    """Generate 20-char keys: 8 chars of millisecond timestamp + 12 random chars.

    Keys created in the same millisecond increment the random suffix so that
    lexical order always follows creation order.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_millis = -1
        self._last_random = [0] * 12

    def __call__(self) -> str:
        with self._lock:
            now = int(self._clock() * 1000)
            if now == self._last_millis:
                for i in range(11, -1, -1):
                    if self._last_random[i] != 63:
                        self._last_random[i] += 1
                        break
                    self._last_random[i] = 0
            else:
                self._last_random = [random.randrange(64) for _ in range(12)]
            self._last_millis = now

            prefix = []
            for _ in range(8):
                prefix.append(PUSH_CHARS[now % 64])
                now //= 64
            suffix = "".join(PUSH_CHARS[i] for i in self._last_random)
            return "".join(reversed(prefix)) + suffix


def retry_with_backoff(
    fn: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``, retrying transient store failures with doubling delays.

    ``max_retries`` counts retries after the first attempt. ``StoreUnavailable``
    raised because the circuit breaker is open is not retried.
    """

    attempt = 0
    while True:
        try:
            return fn()
        except CircuitOpen:
            raise
        except StoreUnavailable as exc:
            if attempt >= max_retries:
                logger.error(
                    "Store %s failed after %d attempt(s): %s",
                    description,
                    attempt + 1,
                    exc,
                )
                raise
            delay = initial_delay * (2 ** attempt)
            logger.warning(
                "Store %s failed (%s), retrying in %.1fs (%d/%d)",
                description,
                exc,
                delay,
                attempt + 1,
                max_retries,
            )
            sleep(delay)
            attempt += 1


class MemoryStore:
    """In-process store with the same path semantics as the hosted one."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._root: dict[str, Any] = copy.deepcopy(initial) if initial else {}
        self._lock = threading.RLock()
        self._push_key = PushKeyGenerator()

    def get(self, path: str, timeout: float | None = None) -> Any:
        with self._lock:
            node: Any = self._root
            for part in split_path(path):
                if not isinstance(node, dict) or part not in node:
                    return None
                node = node[part]
            return copy.deepcopy(node)

    def set(self, path: str, value: Any, timeout: float | None = None) -> None:
        with self._lock:
            self._write(split_path(path), copy.deepcopy(value))

    def update(
        self, path: str, values: dict[str, Any], timeout: float | None = None
    ) -> None:
        base = split_path(path)
        with self._lock:
            for relative, value in values.items():
                self._write(base + split_path(relative), copy.deepcopy(value))

    def push_key(self, path: str) -> str:
        return self._push_key()

    def close(self) -> None:
        return None

    def _write(self, parts: list[str], value: Any) -> None:
        if not parts:
            self._root = value if isinstance(value, dict) else {}
            return
        node = self._root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value


class ConvexStore:
    """Store backed by a Convex deployment.

    The deployment exposes ``store:get`` (query) and ``store:set`` /
    ``store:update`` (mutations), each taking a slash-separated ``path``.
    Calls run on a small executor so a hung request can be abandoned after
    its timeout; repeated timeouts open a circuit breaker.
    """

    def __init__(
        self,
        deployment_url: str,
        admin_key: str | None = None,
        timeout: float = 15.0,
        max_retries: int = 3,
        retry_initial_delay: float = 1.0,
        max_consecutive_timeouts: int = 3,
        circuit_open_seconds: float = 30.0,
        client_factory: Callable[[str], Any] = convex.ConvexClient,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.deployment_url = deployment_url
        self.admin_key = admin_key
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_initial_delay = retry_initial_delay
        self.max_consecutive_timeouts = max_consecutive_timeouts
        self.circuit_open_seconds = circuit_open_seconds
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Any = None
        self._executor: ThreadPoolExecutor | None = None
        self._lock = threading.Lock()
        # Shared by request threads and the reconciler thread
        self._breaker_lock = threading.Lock()
        self._consecutive_timeouts = 0
        self._circuit_open_until = 0.0
        self._push_key = PushKeyGenerator()

    def open(self) -> "ConvexStore":
        """Create the Convex client and executor. Safe to call repeatedly."""
        with self._lock:
            if self._client is None:
                logger.info("Initializing Convex client for %s", self.deployment_url)
                client = self._client_factory(self.deployment_url)
                if self.admin_key:
                    client.client.set_admin_auth(self.admin_key)
                self._client = client
                logger.info("Convex client initialized")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=4, thread_name_prefix="convex"
                )
        return self

    def close(self, wait: bool = False) -> None:
        with self._lock:
            if self._executor is not None:
                logger.info("Shutting down Convex executor...")
                self._executor.shutdown(wait=wait)
                self._executor = None
            self._client = None

    def get(self, path: str, timeout: float | None = None) -> Any:
        def _query() -> Any:
            return self._require_client().query("store:get", {"path": path})

        return retry_with_backoff(
            lambda: self._call(_query, f"get {path}", timeout),
            max_retries=self.max_retries,
            initial_delay=self.retry_initial_delay,
            description=f"get {path}",
            sleep=self._sleep,
        )

    def set(self, path: str, value: Any, timeout: float | None = None) -> None:
        def _mutation() -> Any:
            return self._require_client().mutation(
                "store:set", {"path": path, "value": value}
            )

        self._call(_mutation, f"set {path}", timeout)

    def update(
        self, path: str, values: dict[str, Any], timeout: float | None = None
    ) -> None:
        def _mutation() -> Any:
            return self._require_client().mutation(
                "store:update", {"path": path, "values": values}
            )

        self._call(_mutation, f"update {path} ({len(values)} path(s))", timeout)

    def push_key(self, path: str) -> str:
        return self._push_key()

    def _require_client(self) -> Any:
        if self._client is None:
            raise StoreUnavailable("Convex client is not open")
        return self._client

    def _call(self, fn: Callable[[], T], description: str, timeout: float | None) -> T:
        """Run a Convex call with timeout + circuit breaker."""
        timeout = self.timeout if timeout is None else timeout

        with self._breaker_lock:
            now = time.monotonic()
            if now < self._circuit_open_until:
                remaining = self._circuit_open_until - now
                logger.warning(
                    "Skipping Convex %s because circuit breaker is open (%.1fs remaining)",
                    description,
                    remaining,
                )
                raise CircuitOpen(f"circuit open, {remaining:.1f}s remaining")

            if self._consecutive_timeouts >= self.max_consecutive_timeouts:
                logger.info("Convex circuit breaker CLOSED - resuming operations")
                self._consecutive_timeouts = 0

        executor = self._executor
        if executor is None:
            raise StoreUnavailable("Convex store is not open")

        future = executor.submit(fn)
        start = time.monotonic()
        try:
            result = future.result(timeout=timeout)
        except TimeoutError:
            duration = time.monotonic() - start
            with self._breaker_lock:
                self._consecutive_timeouts += 1
                timeouts = self._consecutive_timeouts
                if timeouts >= self.max_consecutive_timeouts:
                    self._circuit_open_until = time.monotonic() + self.circuit_open_seconds
            logger.error(
                "Convex %s timed out after %.2fs (%d/%d)",
                description,
                duration,
                timeouts,
                self.max_consecutive_timeouts,
            )
            if timeouts >= self.max_consecutive_timeouts:
                logger.error(
                    "Convex circuit breaker OPEN for %.1fs after %d consecutive timeouts",
                    self.circuit_open_seconds,
                    timeouts,
                )
            raise StoreTimeout(f"{description} timed out after {timeout:.1f}s")
        except StoreError:
            raise
        except Exception as exc:
            duration = time.monotonic() - start
            logger.error("Convex %s failed after %.2fs: %s", description, duration, exc)
            self._reset_timeouts()
            raise StoreUnavailable(f"{description} failed: {exc}") from exc

        duration = time.monotonic() - start
        logger.debug("Convex %s succeeded in %.2fs", description, duration)
        self._reset_timeouts()
        return result

    def _reset_timeouts(self) -> None:
        with self._breaker_lock:
            self._consecutive_timeouts = 0
