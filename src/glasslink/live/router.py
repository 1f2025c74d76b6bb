"""Tool-call router: dispatches model tool calls to the gateway."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterable, Protocol

from glasslink.common.events import EventBus
from glasslink.common.logging import get_logger
from glasslink.errors import GatewayError, UnknownTool
from glasslink.live.protocol import EXECUTE_TOOL, ToolCall, ToolResponse


class TaskExecutor(Protocol):
    async def execute(self, task: str) -> str:
        ...


class ToolCallStatus(Enum):
    """Tool-call task state."""

    PENDING = "pending"
    RUNNING = "running"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ToolCallTask:
    """Router-side record of one in-flight tool call."""

    id: str
    name: str
    task: str
    status: ToolCallStatus = ToolCallStatus.PENDING
    cancellation_requested: bool = False
    handle: asyncio.Task | None = None
    created_at: float = field(default_factory=time.time)

    @property
    def active(self) -> bool:
        return self.status in (ToolCallStatus.PENDING, ToolCallStatus.RUNNING)


EmitResponse = Callable[[ToolResponse], Awaitable[None]]


class ToolCallRouter:
    """Routes tool calls to the gateway and their results back to the model.

    Every call the model is still tracking gets exactly one response,
    success or error, so the conversation never stalls. A cancelled call
    gets none: the result is discarded even if the gateway answers later.
    The cancellation check and the response commit happen with no
    suspension point in between, so whichever of the two lands first
    wins.
    """

    def __init__(
        self,
        gateway: TaskExecutor,
        emit: EmitResponse,
        event_bus: EventBus | None = None,
    ) -> None:
        self._gateway = gateway
        self._emit = emit
        self._events = event_bus
        self._tasks: dict[str, ToolCallTask] = {}
        self._background: set[asyncio.Task] = set()
        self.logger = get_logger("tool_router")

    @property
    def active_ids(self) -> frozenset[str]:
        return frozenset(self._tasks)

    def get_task(self, call_id: str) -> ToolCallTask | None:
        return self._tasks.get(call_id)

    async def handle_request(self, call: ToolCall) -> None:
        """Accept one tool call from the model."""
        if call.name != EXECUTE_TOOL:
            error = UnknownTool(call.name)
            self.logger.warning("unknown_tool", call_id=call.id, tool=call.name)
            await self._respond(call.id, call.name, f"Error: {error}", ToolCallStatus.FAILED)
            return

        if not call.task:
            self.logger.warning("tool_call_missing_task", call_id=call.id)
            await self._respond(
                call.id, call.name, "Error: missing required argument 'task'", ToolCallStatus.FAILED
            )
            return

        if call.id in self._tasks:
            self.logger.warning("duplicate_tool_call", call_id=call.id)
            return

        record = ToolCallTask(id=call.id, name=call.name, task=call.task)
        self._tasks[call.id] = record

        record.status = ToolCallStatus.RUNNING
        record.handle = asyncio.create_task(self._run(record), name=f"tool-call-{call.id}")
        self.logger.info("tool_call_started", call_id=call.id, task=call.task)
        await self._publish("tool.started", record)

    async def _run(self, record: ToolCallTask) -> None:
        if record.cancellation_requested:
            return
        try:
            output = await self._gateway.execute(record.task)
            outcome = ToolCallStatus.COMPLETED
        except asyncio.CancelledError:
            self.logger.info("tool_call_aborted", call_id=record.id)
            raise
        except GatewayError as e:
            output = f"Error: {e}"
            outcome = ToolCallStatus.FAILED
        except Exception as e:
            self.logger.exception("tool_call_crashed", call_id=record.id, error=str(e))
            output = f"Error: {type(e).__name__}: {e}"
            outcome = ToolCallStatus.FAILED

        # Emit boundary: no await between this check and the commit
        if record.cancellation_requested or self._tasks.get(record.id) is not record:
            self.logger.info("tool_result_discarded", call_id=record.id)
            return
        record.status = outcome
        del self._tasks[record.id]

        self.logger.info("tool_call_finished", call_id=record.id, status=outcome.value)
        await self._respond(record.id, record.name, output, outcome)

    async def _respond(self, call_id: str, name: str, output: str, outcome: ToolCallStatus) -> None:
        response = ToolResponse(id=call_id, name=name, output=output)
        try:
            await self._emit(response)
        except Exception as e:
            self.logger.warning("tool_response_not_sent", call_id=call_id, error=str(e))
        if self._events is not None:
            topic = "tool.completed" if outcome is ToolCallStatus.COMPLETED else "tool.failed"
            await self._events.emit(topic, "tool_router", id=call_id, name=name, output=output)

    def handle_cancellation(self, ids: Iterable[str]) -> list[str]:
        """Cancel in-flight calls. No response will be sent for them.

        Returns:
            The ids that were actually cancelled.
        """
        cancelled = []
        for call_id in ids:
            record = self._tasks.get(call_id)
            if record is None or not record.active:
                self.logger.debug("cancel_unknown_tool_call", call_id=call_id)
                continue
            record.cancellation_requested = True
            record.status = ToolCallStatus.CANCELLED
            del self._tasks[call_id]
            if record.handle is not None:
                record.handle.cancel()
            cancelled.append(call_id)
            self.logger.info("tool_call_cancelled", call_id=call_id)
            if self._events is not None:
                self._publish_soon("tool.cancelled", record)
        return cancelled

    def cancel_all(self) -> list[str]:
        """Cancel every in-flight call (session teardown)."""
        return self.handle_cancellation(list(self._tasks))

    async def join(self) -> None:
        """Wait until every dispatched call has finished or been cancelled."""
        handles = [r.handle for r in self._tasks.values() if r.handle is not None]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

    async def _publish(self, topic: str, record: ToolCallTask) -> None:
        if self._events is not None:
            await self._events.emit(
                topic, "tool_router", id=record.id, name=record.name, task=record.task
            )

    def _publish_soon(self, topic: str, record: ToolCallTask) -> None:
        # The loop keeps only weak references to tasks
        task = asyncio.get_running_loop().create_task(self._publish(topic, record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(_log_publish_failure)


def _log_publish_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        get_logger("tool_router").warning("event_publish_failed", error=str(task.exception()))
