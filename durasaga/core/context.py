"""
Workflow context - the capabilities a workflow definition may use.

A definition must be a pure function of its input and its history. Every
side effect goes through ``execute_activity`` and every non-deterministic
value through ``side_effect`` (or its ``now``/``uuid4`` shortcuts), so a
replay after a crash reproduces the same decisions from the recorded events.

Each call consumes the next scheduling point number (``seq``). During replay
a scheduling point that already has a terminal event returns the recorded
result immediately, without dispatching anything.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from durasaga.core.exceptions import NonDeterminismError
from durasaga.core.results import StepResult, result_from_event
from durasaga.core.retry import RetryPolicy
from durasaga.core.types import ActivityTask, Event, EventType

if TYPE_CHECKING:
    from durasaga.core.engine import ExecutionRuntime, WorkflowEngine


class WorkflowContext:
    """
    Handed to ``definition.run(ctx, input)`` by the engine.

    Attributes:
        execution_id: Id of the running execution
        definition_name: Registered name of the definition
    """

    def __init__(self, engine: WorkflowEngine, runtime: ExecutionRuntime):
        self._engine = engine
        self._runtime = runtime
        self._seq = 0
        # Position of the last history event the definition has observed
        self._horizon = 0
        self.execution_id = runtime.execution.execution_id
        self.definition_name = runtime.execution.definition_ref

    @property
    def is_replaying(self) -> bool:
        """True while the definition is re-reading recorded scheduling points."""
        return self._seq < max(self._runtime.index.scheduled.keys() | self._runtime.index.markers.keys(), default=0)

    @property
    def cancel_requested(self) -> bool:
        """
        Whether a cancellation was recorded before the last observed event.

        Bounded by the observation horizon so replay answers the same way the
        original run did.
        """
        return self._runtime.index.cancel_requested_before(self._horizon)

    @property
    def unobserved_cancel(self) -> bool:
        """A cancellation was recorded after the last observed event."""
        return any(s > self._horizon for s in self._runtime.index.cancel_sequences)

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _observe(self, event: Event) -> None:
        self._horizon = max(self._horizon, event.sequence)

    async def execute_activity(
        self,
        activity_type: str,
        input: Any,
        task_queue: str,
        retry_policy: RetryPolicy | None = None,
        start_to_close_timeout: float | None = None,
        compensation: bool = False,
        step_index: int | None = None,
    ) -> StepResult:
        """
        Schedule an activity and suspend until its terminal result.

        Returns:
            Success, RetryableFailure (attempts exhausted) or FatalFailure

        Raises:
            NonDeterminismError: The history recorded a different decision
                at this scheduling point
        """
        seq = self._next_seq()
        index = self._runtime.index
        scheduled_type = (
            EventType.COMPENSATION_SCHEDULED if compensation else EventType.ACTIVITY_SCHEDULED
        )

        if seq in index.markers:
            raise NonDeterminismError(self.execution_id, seq, "MarkerRecorded", activity_type)

        recorded = index.scheduled.get(seq)
        if recorded is not None:
            recorded_type = recorded.attributes.get("activity_type")
            if recorded.event_type != scheduled_type or recorded_type != activity_type:
                raise NonDeterminismError(self.execution_id, seq, recorded_type, activity_type)

            self._observe(recorded)
            terminal = index.terminal.get(seq)
            if terminal is not None:
                self._observe(terminal)
                return result_from_event(terminal)

            # Scheduled before a restart but never finished: dispatch again.
            # The attempt that was in flight may have run, so one crash can
            # add an execution beyond max_attempts; activities dedupe on task_id.
            attempt = index.last_attempt(seq)
            attrs = recorded.attributes
            task = ActivityTask(
                task_id=f"{self.execution_id}:{seq}",
                execution_id=self.execution_id,
                activity_type=activity_type,
                input=attrs.get("input"),
                task_queue=attrs.get("task_queue", task_queue),
                attempt=attempt,
                start_to_close_timeout=attrs.get("start_to_close_timeout", 60.0),
            )
            policy = RetryPolicy.from_dict(attrs["retry_policy"]) if attrs.get("retry_policy") else retry_policy
            return await self._dispatch(seq, task, policy, compensation, redelivery=True)

        policy = retry_policy or self._engine.default_retry_policy
        timeout = start_to_close_timeout or self._engine.default_start_to_close_timeout
        event = await self._engine.append_event(
            self._runtime,
            scheduled_type,
            {
                "seq": seq,
                "activity_type": activity_type,
                "task_queue": task_queue,
                "input": input,
                "attempt": 1,
                "step_index": step_index,
                "retry_policy": policy.to_dict(),
                "start_to_close_timeout": timeout,
            },
        )
        self._observe(event)
        task = ActivityTask(
            task_id=f"{self.execution_id}:{seq}",
            execution_id=self.execution_id,
            activity_type=activity_type,
            input=input,
            task_queue=task_queue,
            attempt=1,
            start_to_close_timeout=timeout,
        )
        return await self._dispatch(seq, task, policy, compensation)

    async def _dispatch(
        self,
        seq: int,
        task: ActivityTask,
        policy: RetryPolicy | None,
        compensation: bool,
        redelivery: bool = False,
    ) -> StepResult:
        waiter = asyncio.get_running_loop().create_future()
        self._runtime.waiters[seq] = waiter
        try:
            await self._engine.dispatch(self._runtime, task, policy, compensation, redelivery)
            terminal = await waiter
        finally:
            self._runtime.waiters.pop(seq, None)
        self._observe(terminal)
        return result_from_event(terminal)

    async def side_effect(self, fn: Callable[[], Any], name: str = "side_effect") -> Any:
        """
        Run ``fn`` once and record its value; replay returns the recorded value.

        ``fn`` may be a plain callable or return an awaitable. The value must
        be serializable.
        """
        seq = self._next_seq()
        index = self._runtime.index

        if seq in index.scheduled:
            recorded_type = index.scheduled[seq].attributes.get("activity_type")
            raise NonDeterminismError(self.execution_id, seq, recorded_type, name)

        marker = index.markers.get(seq)
        if marker is not None:
            if marker.attributes.get("name") != name:
                raise NonDeterminismError(self.execution_id, seq, marker.attributes.get("name"), name)
            self._observe(marker)
            return marker.attributes.get("value")

        value = fn()
        if inspect.isawaitable(value):
            value = await value
        event = await self._engine.append_event(
            self._runtime, EventType.MARKER_RECORDED, {"seq": seq, "name": name, "value": value}
        )
        self._observe(event)
        return value

    async def now(self) -> datetime:
        """Recorded wall-clock time."""
        value = await self.side_effect(lambda: datetime.now(UTC).isoformat(), name="now")
        return datetime.fromisoformat(value)

    async def uuid4(self) -> str:
        """Recorded random UUID."""
        return await self.side_effect(lambda: str(uuid.uuid4()), name="uuid4")
