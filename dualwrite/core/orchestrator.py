from __future__ import annotations

import asyncio
import functools
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from dualwrite.config import settings
from dualwrite.core.background import BackgroundTasks
from dualwrite.core.classifier import DiffClassifier
from dualwrite.core.diff_engine import StructuralDiff, snapshot
from dualwrite.core.errors import BackendCallFailed, ConfigUnavailable, DiffComputationFailed
from dualwrite.core.feature_flags import FeatureFlags, FeatureFlagStore
from dualwrite.core.recorder import DiffRecorder
from dualwrite.core.types import (
    BACKEND_PRIMARY,
    BACKEND_SECONDARY,
    DiffOp,
    DiffRecord,
    FULFILLED,
    OP_REPLACE,
    REJECTED,
    SEVERITY_ERROR,
    SEVERITY_WARNING,
)
from dualwrite.logging_utils import get_logger

logger = get_logger(__name__)

BackendCall = Callable[[], Any]
# (value returned by the side that succeeded, name of that side)
Compensator = Callable[[Any, str], Any]

MUTATING_PREFIXES = ("create", "update", "delete")


def is_mutating(operation: str) -> bool:
    return str(operation).startswith(MUTATING_PREFIXES)


async def _call_in_thread(call: BackendCall) -> Any:
    result = await asyncio.to_thread(call)
    # lambda: client.fetch(...) hands back a coroutine; run it on the loop
    if inspect.isawaitable(result):
        result = await result
    return result


async def invoke_backend(call: BackendCall, timeout: float | None) -> Any:
    """Coroutine functions are awaited on the loop, plain callables run in a worker thread."""
    if inspect.iscoroutinefunction(call):
        aw: Awaitable[Any] = call()
    else:
        aw = _call_in_thread(call)
    if timeout is None or float(timeout) <= 0:
        return await aw
    return await asyncio.wait_for(aw, timeout=float(timeout))


@dataclass
class CallOutcome:
    backend: str
    status: str
    value: Any = None
    snapshot: Any = None
    snapshot_error: str | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == FULFILLED

    def describe_error(self) -> str | None:
        if self.error is None:
            return None
        return BackendCallFailed(self.backend, self.error).describe()


def _other(backend: str) -> str:
    return BACKEND_SECONDARY if backend == BACKEND_PRIMARY else BACKEND_PRIMARY


class DualWriteOrchestrator:
    """
    Executes one logical operation against the legacy (primary) and/or new (secondary) backend.

    Flags (read once per call):
      enableDualWrite=false -> only the authoritative backend is called, nothing is recorded
      enableDualWrite=true  -> both are called concurrently; the caller waits only for the
                               authoritative one, comparison + recording run in the background
      enableSupabasePrimary -> false: primary authoritative, true: secondary authoritative

    Only the authoritative backend's own failure reaches the caller.
    When the background queue is full the comparison is skipped, a
    DUAL_WRITE_COMPARISON_DROPPED event is written and the non-authoritative
    call is still awaited by drain().
    """

    def __init__(
        self,
        flag_store: FeatureFlagStore,
        recorder: DiffRecorder,
        classifier: DiffClassifier | None = None,
        engine: StructuralDiff | None = None,
        background: BackgroundTasks | None = None,
        secondary_only: Iterable[str] | None = None,
        call_timeout_sec: float | None = None,
        flag_key: str | None = None,
    ) -> None:
        self.flag_store = flag_store
        self.recorder = recorder
        self.classifier = classifier or DiffClassifier.from_config(settings.classifier_rules())
        self.engine = engine or StructuralDiff()
        self.background = background or BackgroundTasks()
        self.secondary_only = set(settings.secondary_only_operations() if secondary_only is None else secondary_only)
        self.call_timeout_sec = float(settings.BACKEND_CALL_TIMEOUT_SEC if call_timeout_sec is None else call_timeout_sec)
        self.flag_key = flag_key
        # work left over when the supervisor refused a comparison
        self._overflow: set[asyncio.Future] = set()

    def read_flags(self) -> FeatureFlags:
        try:
            return self.flag_store.flags(self.flag_key)
        except ConfigUnavailable as e:
            # fail toward the simpler path: single write, default authority
            logger.warning("[DUAL-WRITE] flags unavailable, single write with defaults: %r", e)
            d = FeatureFlags.defaults()
            return FeatureFlags(enable_dual_write=False, enable_supabase_primary=d.enable_supabase_primary)

    async def execute(
        self,
        endpoint: str,
        operation: str,
        primary_call: BackendCall | None,
        secondary_call: BackendCall | None,
        payload: Any = None,
        timeout: float | None = None,
        compensate: Compensator | None = None,
    ) -> Any:
        timeout = self.call_timeout_sec if timeout is None else timeout

        if operation in self.secondary_only:
            # RPC-only on the new backend; nothing on the legacy side to compare against
            if secondary_call is None:
                raise ValueError(f"{endpoint}.{operation} is secondary-only but no secondary call was given")
            return await invoke_backend(secondary_call, timeout)

        # a cold cache means a DB round trip; keep it off the event loop
        flags = await asyncio.to_thread(self.read_flags)
        auth_backend = flags.authoritative_backend
        other_backend = _other(auth_backend)
        calls = {BACKEND_PRIMARY: primary_call, BACKEND_SECONDARY: secondary_call}

        auth_call = calls[auth_backend]
        if auth_call is None:
            raise ValueError(f"{endpoint}.{operation}: authoritative {auth_backend} call is required")

        if not flags.enable_dual_write:
            return await invoke_backend(auth_call, timeout)

        if calls[other_backend] is None:
            logger.warning("[DUAL-WRITE] %s.%s: no %s call, falling back to single write",
                           endpoint, operation, other_backend)
            return await invoke_backend(auth_call, timeout)

        payload_copy = snapshot(payload) if payload is not None else None

        loop = asyncio.get_running_loop()
        tasks = {
            b: loop.create_task(self._settle(b, calls[b], timeout, authoritative=(b == auth_backend)))
            for b in (BACKEND_PRIMARY, BACKEND_SECONDARY)
        }

        try:
            auth = await tasks[auth_backend]
        except asyncio.CancelledError:
            # caller gave up: the authoritative task is cancelled with us; let the other side finish, bounded
            self.background.spawn(self._await_quietly(tasks[other_backend]), name=f"orphan:{endpoint}.{operation}")
            raise

        compare = self.background.spawn(
            self._compare_and_record(
                endpoint,
                operation,
                tasks[BACKEND_PRIMARY],
                tasks[BACKEND_SECONDARY],
                auth_backend,
                payload_copy,
                compensate,
            ),
            name=f"compare:{endpoint}.{operation}",
        )
        if compare is None:
            self._comparison_dropped(endpoint, operation, tasks[other_backend])

        if not auth.ok:
            assert auth.error is not None
            raise auth.error
        return auth.value

    async def _settle(self, backend: str, call: BackendCall, timeout: float | None, authoritative: bool) -> CallOutcome:
        try:
            value = await invoke_backend(call, timeout)
        except Exception as e:
            if not authoritative:
                logger.error("[DUAL-WRITE] %s (non-authoritative) call failed: %r", backend, e)
            return CallOutcome(backend=backend, status=REJECTED, error=e)

        out = CallOutcome(backend=backend, status=FULFILLED, value=value)
        try:
            out.snapshot = snapshot(value)
        except Exception as e:
            out.snapshot_error = f"{type(e).__name__}: {e}"[:500]
        return out

    async def _await_quietly(self, task: asyncio.Task) -> None:
        await task

    def _track(self, fut: asyncio.Future) -> None:
        self._overflow.add(fut)
        fut.add_done_callback(self._overflow.discard)

    def _comparison_dropped(self, endpoint: str, operation: str, other_task: asyncio.Task) -> None:
        logger.warning("[DUAL-WRITE] %s.%s: background queue full, comparison not recorded", endpoint, operation)
        event = asyncio.get_running_loop().create_task(
            asyncio.to_thread(
                self.recorder.write_event,
                "DUAL_WRITE_COMPARISON_DROPPED",
                SEVERITY_WARNING.upper(),
                {"operation": operation, "pending": self.background.pending},
                endpoint,
            )
        )
        self._track(event)
        self._track(other_task)

    async def _compare_and_record(
        self,
        endpoint: str,
        operation: str,
        primary_task: asyncio.Task,
        secondary_task: asyncio.Task,
        auth_backend: str,
        payload: Any,
        compensate: Compensator | None,
    ) -> None:
        primary = await primary_task
        secondary = await secondary_task

        rec = self.build_record(endpoint, operation, primary, secondary, auth_backend, payload)
        await asyncio.to_thread(self.recorder.record, rec)

        auth = primary if auth_backend == BACKEND_PRIMARY else secondary
        other = secondary if auth_backend == BACKEND_PRIMARY else primary
        if compensate is not None and not auth.ok and other.ok and is_mutating(operation):
            await self._compensate(endpoint, operation, other, compensate)

    def build_record(
        self,
        endpoint: str,
        operation: str,
        primary: CallOutcome,
        secondary: CallOutcome,
        auth_backend: str = BACKEND_PRIMARY,
        payload: Any = None,
    ) -> DiffRecord:
        base = dict(
            api_endpoint=endpoint,
            operation=operation,
            primary_result_status=primary.status,
            secondary_result_status=secondary.status,
            authoritative_backend=auth_backend,
            primary_error=primary.describe_error(),
            secondary_error=secondary.describe_error(),
            payload=payload,
        )

        if not (primary.ok and secondary.ok):
            return DiffRecord(severity=SEVERITY_ERROR, diff=[], **base)

        try:
            if primary.snapshot_error or secondary.snapshot_error:
                raise DiffComputationFailed(
                    f"unserializable result: primary={primary.snapshot_error} secondary={secondary.snapshot_error}"
                )
            result = self.engine.compare(primary.snapshot, secondary.snapshot)
        except DiffComputationFailed as e:
            logger.warning("[DUAL-WRITE] %s.%s: diff computation failed: %s", endpoint, operation, e)
            return DiffRecord(
                severity=SEVERITY_WARNING,
                diff=[DiffOp(OP_REPLACE, "", {"diffComputationFailed": str(e)[:500]})],
                needs_review=True,
                **base,
            )

        severity = self.classifier.classify(endpoint, result.ops)
        if result.truncated:
            logger.warning("[DUAL-WRITE] %s.%s: comparison truncated at %s", endpoint, operation, result.truncated_paths)
        return DiffRecord(severity=severity, diff=result.ops, needs_review=result.truncated, **base)

    async def _compensate(self, endpoint: str, operation: str, outcome: CallOutcome, compensate: Compensator) -> None:
        try:
            await invoke_backend(functools.partial(compensate, outcome.value, outcome.backend), self.call_timeout_sec)
            logger.info("[DUAL-WRITE] %s.%s: compensated %s write", endpoint, operation, outcome.backend)
        except Exception as e:
            logger.error("[DUAL-WRITE] %s.%s: compensation of %s write failed: %r", endpoint, operation, outcome.backend, e)
            await asyncio.to_thread(
                self.recorder.write_event,
                "DUAL_WRITE_COMPENSATION_FAILED",
                SEVERITY_ERROR.upper(),
                {"operation": operation, "backend": outcome.backend, "error": repr(e)[:500]},
                endpoint,
            )

    async def drain(self, timeout: float | None = None) -> bool:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + float(timeout)
        idle = await self.background.drain(timeout)
        if self._overflow:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, pending = await asyncio.wait(set(self._overflow), timeout=remaining)
            idle = idle and not pending
        return idle

    async def shutdown(self) -> None:
        await self.background.shutdown()
        overflow = list(self._overflow)
        for fut in overflow:
            fut.cancel()
        if overflow:
            await asyncio.gather(*overflow, return_exceptions=True)


class DualWriteRepository:
    """
    Wraps two repository objects with the same interface; every method call goes through
    DualWriteOrchestrator.execute under one endpoint name.

        budgets = DualWriteRepository(orch, "budget", legacy_repo, new_repo)
        await budgets.create({"amount": 10})

    A failed authoritative create is compensated with `delete(id)` on whichever side the
    orchestrator reports as having succeeded, when that repository has one.
    """

    def __init__(self, orchestrator: DualWriteOrchestrator, endpoint: str, primary_repo: Any, secondary_repo: Any) -> None:
        self._orch = orchestrator
        self._endpoint = endpoint
        self._primary = primary_repo
        self._secondary = secondary_repo

    def _bound(self, repo: Any, name: str, args: tuple, kwargs: dict) -> BackendCall | None:
        if repo is None:
            return None
        method = getattr(repo, name, None)
        if not callable(method):
            return None
        return functools.partial(method, *args, **kwargs)

    def _compensator(self, name: str) -> Compensator | None:
        if not name.startswith("create"):
            return None

        def _undo(value: Any, backend: str) -> Any:
            repo = self._secondary if backend == BACKEND_SECONDARY else self._primary
            delete = getattr(repo, "delete", None)
            if not callable(delete):
                raise ValueError(f"{backend} repository has no delete() to compensate with")
            ident = value.get("id") if isinstance(value, dict) else getattr(value, "id", None)
            if ident is None:
                raise ValueError("created value has no id to compensate")
            return delete(ident)

        return _undo

    def __getattr__(self, name: str) -> Callable[..., Awaitable[Any]]:
        if name.startswith("_"):
            raise AttributeError(name)

        async def _method(*args: Any, **kwargs: Any) -> Any:
            return await self._orch.execute(
                self._endpoint,
                name,
                self._bound(self._primary, name, args, kwargs),
                self._bound(self._secondary, name, args, kwargs),
                payload=args[0] if args else (kwargs or None),
                compensate=self._compensator(name),
            )

        _method.__name__ = name
        return _method
