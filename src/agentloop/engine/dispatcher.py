"""ToolDispatcher: executes ToolCalls against a ToolRegistry.

``dispatch`` never raises for tool-level problems. Unknown tools, schema
violations, timeouts, cancellations and tool exceptions all come back
as failed TaskResults the model can act on. Whether the session goes on
is the engine's decision, not the dispatcher's.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TYPE_CHECKING, Any, Callable

from agentloop.engine.execution import CancellationToken, CommandResult, ExecutionContext
from agentloop.exceptions import ToolExecutionError
from agentloop.models.results import TaskResult, ToolErrorKind
from agentloop.toolkit.validation import validate_arguments

if TYPE_CHECKING:
    from collections.abc import Sequence

    from agentloop.models.messages import ToolCall
    from agentloop.protocols import ToolLookup
    from agentloop.toolkit.models import ToolSpec

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


def _normalize_output(value: Any) -> tuple[str | dict | list, int | None]:
    if isinstance(value, CommandResult):
        return value.output, value.exit_status
    if value is None:
        return "", None
    if isinstance(value, (str, dict, list)):
        return value, None
    return str(value), None


class ToolDispatcher:
    """Runs tool calls under a timeout and a cancellation token.

    Args:
        timeout: Default per-call timeout in seconds.
        cwd: Working directory for ExecutionContexts built by
            ``dispatch_batch``.
    """

    def __init__(self, timeout: float = 480.0, *, cwd: str | None = None) -> None:
        self.timeout = timeout
        self.cwd = cwd

    def dispatch(
        self,
        tool_call: ToolCall,
        registry: ToolLookup,
        execution_context: ExecutionContext,
        *,
        timeout: float | None = None,
    ) -> TaskResult:
        """Execute one tool call.

        Args:
            tool_call: The call to execute.
            registry: Where to look the tool up.
            execution_context: Cancellation token plus subprocess tracking
                for this call. Its processes are terminated on timeout
                or cancellation.
            timeout: Per-call timeout, defaults to the dispatcher's.

        Returns:
            TaskResult correlated to ``tool_call.id``.
        """
        name = tool_call.name
        spec = registry.lookup(name)
        if spec is None:
            logger.debug("Unknown tool %s (call %s)", name, tool_call.id)
            return TaskResult.failed(tool_call.id, name, f"unknown tool: {name}", ToolErrorKind.NOT_FOUND)

        errors = validate_arguments(tool_call.arguments, spec.parameters)
        if errors:
            detail = "; ".join(errors)
            logger.debug("Schema violation for %s: %s", name, detail)
            return TaskResult.failed(
                tool_call.id,
                name,
                f"invalid arguments for {name}: {detail}",
                ToolErrorKind.SCHEMA_VIOLATION,
            )

        limit = self.timeout if timeout is None else timeout
        token = execution_context.token
        start = time.monotonic()
        future = self._start(spec, tool_call, execution_context)

        while True:
            try:
                value = future.result(timeout=_POLL_INTERVAL)
                break
            except FutureTimeoutError:
                pass
            except ToolExecutionError as exc:
                execution_context.terminate_all()
                return TaskResult.failed(
                    tool_call.id,
                    name,
                    str(exc),
                    exc.kind,
                    duration_ms=_elapsed_ms(start),
                )
            except Exception as exc:
                logger.debug("Tool %s failed: %s", name, exc, exc_info=True)
                execution_context.terminate_all()
                return TaskResult.failed(
                    tool_call.id,
                    name,
                    f"{type(exc).__name__}: {exc}",
                    ToolErrorKind.RUNTIME_FAILURE,
                    duration_ms=_elapsed_ms(start),
                )

            if token.is_cancelled:
                return self._abort(tool_call, execution_context, ToolErrorKind.CANCELLED, token.reason, start)
            if time.monotonic() - start >= limit:
                token.cancel("timeout")
                return self._abort(
                    tool_call,
                    execution_context,
                    ToolErrorKind.TIMEOUT,
                    f"{name} timed out after {limit:g}s",
                    start,
                )

        output, exit_status = _normalize_output(value)
        logger.debug("Tool %s completed in %.0fms", name, _elapsed_ms(start))
        return TaskResult.ok(
            tool_call.id,
            name,
            output,
            duration_ms=_elapsed_ms(start),
            exit_status=exit_status,
        )

    def dispatch_batch(
        self,
        tool_calls: Sequence[ToolCall],
        registry: ToolLookup,
        token: CancellationToken,
        *,
        parallel: bool = False,
        max_workers: int = 4,
        on_start: Callable[[ToolCall], None] | None = None,
    ) -> list[TaskResult]:
        """Execute a turn's calls, returning results in emission order.

        Without ``parallel`` every call runs sequentially. With it,
        consecutive calls whose tools are ``parallel_safe`` run
        concurrently; a call marked ``sequential`` (or using a tool that
        is not parallel-safe) waits for everything before it and runs
        alone.

        ``on_start`` is always called on the calling thread, in emission
        order: just before a sequential call runs, and for every call of
        a concurrent group before the group is submitted.
        """
        results: list[TaskResult | None] = [None] * len(tool_calls)

        def announce(index: int) -> None:
            if on_start is not None:
                on_start(tool_calls[index])

        def run_one(index: int) -> None:
            call = tool_calls[index]
            with ExecutionContext(token.child(), cwd=self.cwd) as ctx:
                if token.is_cancelled:
                    results[index] = TaskResult.failed(
                        call.id,
                        call.name,
                        token.reason or "cancelled",
                        ToolErrorKind.CANCELLED,
                    )
                    return
                results[index] = self.dispatch(call, registry, ctx)

        if not parallel or len(tool_calls) < 2:
            for index in range(len(tool_calls)):
                announce(index)
                run_one(index)
            return [r for r in results if r is not None]

        for group in self._groups(tool_calls, registry):
            for index in group:
                announce(index)
            if len(group) == 1:
                run_one(group[0])
                continue
            with ThreadPoolExecutor(max_workers=min(max_workers, len(group))) as pool:
                futures = [pool.submit(run_one, index) for index in group]
                for f in futures:
                    f.result()
        return [r for r in results if r is not None]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _groups(tool_calls: Sequence[ToolCall], registry: ToolLookup) -> list[list[int]]:
        groups: list[list[int]] = []
        current: list[int] = []
        for index, call in enumerate(tool_calls):
            spec = registry.lookup(call.name)
            concurrent = spec is not None and spec.parallel_safe and not call.sequential
            if concurrent:
                current.append(index)
                continue
            if current:
                groups.append(current)
                current = []
            groups.append([index])
        if current:
            groups.append(current)
        return groups

    @staticmethod
    def _start(spec: ToolSpec, tool_call: ToolCall, ctx: ExecutionContext) -> Future:
        future: Future = Future()

        def target() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                if spec.pass_context:
                    value = spec.execute(ctx, **tool_call.arguments)
                else:
                    value = spec.execute(**tool_call.arguments)
            except BaseException as exc:  # noqa: BLE001 - delivered via the future
                future.set_exception(exc)
            else:
                future.set_result(value)

        worker = threading.Thread(target=target, name=f"tool-{tool_call.name}-{tool_call.id}", daemon=True)
        worker.start()
        return future

    @staticmethod
    def _abort(
        tool_call: ToolCall,
        ctx: ExecutionContext,
        kind: ToolErrorKind,
        message: str | None,
        start: float,
    ) -> TaskResult:
        ctx.token.cancel(kind.value)
        killed = ctx.terminate_all()
        logger.warning(
            "Tool %s (call %s) aborted: %s; terminated %d process(es)",
            tool_call.name,
            tool_call.id,
            kind.value,
            killed,
        )
        return TaskResult.failed(
            tool_call.id,
            tool_call.name,
            message or kind.value,
            kind,
            duration_ms=_elapsed_ms(start),
        )


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000.0
