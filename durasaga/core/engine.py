"""
Workflow Engine - durable, replayable execution of workflow definitions.

The engine owns every execution history. A definition never performs side
effects itself: it asks its context to schedule activities, the engine
appends the scheduling event, hands the task to the activity dispatcher and
suspends the definition until the dispatcher reports a terminal result,
which is appended before the definition resumes.

After a restart ``recover()`` re-runs the definition of every active
execution from the beginning. Recorded scheduling points return their
recorded results; only unfinished ones are dispatched again.

Usage:
    >>> engine = WorkflowEngine(InMemoryHistoryStorage(), ActivityDispatcher())
    >>> engine.register(order_saga)
    >>> handle = await engine.start("order-1-1700000000000", "OrderSaga", order_input)
    >>> outcome = await handle.result()
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from durasaga.core.context import WorkflowContext
from durasaga.core.exceptions import (
    AlreadyRunningError,
    DurasagaError,
    ExecutionIdReuseError,
    ExecutionNotFoundError,
    UnknownWorkflowError,
    error_to_dict,
)
from durasaga.core.history import HistoryIndex, advance_status, outcome_from_history
from durasaga.core.logger import get_logger
from durasaga.core.retry import RetryDecision, RetryPolicy
from durasaga.core.types import (
    ActivityTask,
    Event,
    EventType,
    ExecutionStatus,
    WorkflowExecution,
    WorkflowOutcome,
)
from durasaga.dispatch.dispatcher import ActivityDispatcher
from durasaga.storage.core import ExecutionExistsError, SequenceConflictError

if TYPE_CHECKING:
    from durasaga.core.config import EngineConfig
    from durasaga.core.listeners import EngineListener
    from durasaga.storage.base import HistoryStorage

logger = get_logger(__name__)


@runtime_checkable
class WorkflowDefinition(Protocol):
    """Anything with a ``name`` and an ``async run(ctx, input)``."""

    name: str

    async def run(self, ctx: WorkflowContext, input: Any) -> Any: ...


@dataclass
class ExecutionRuntime:
    """In-memory state of an execution driven by this engine."""

    execution: WorkflowExecution
    definition: WorkflowDefinition
    index: HistoryIndex
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    waiters: dict[int, asyncio.Future] = field(default_factory=dict)
    done: asyncio.Future | None = None
    driver: asyncio.Task | None = None
    started: float = field(default_factory=time.monotonic)
    finishing: bool = False


@dataclass
class ExecutionDescription:
    """Queryable view of an execution."""

    execution_id: str
    definition_ref: str
    status: ExecutionStatus
    task_queue: str | None = None
    output: Any = None
    failure: dict[str, Any] | None = None
    compensations: list[dict[str, Any]] = field(default_factory=list)
    run_state: Any = None
    event_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def compensation_failures(self) -> list[dict[str, Any]]:
        return [c for c in self.compensations if c.get("status") == "failed"]

    def to_dict(self) -> dict[str, Any]:
        run_state = self.run_state.to_dict() if hasattr(self.run_state, "to_dict") else self.run_state
        return {
            "execution_id": self.execution_id,
            "definition_ref": self.definition_ref,
            "status": self.status.value,
            "task_queue": self.task_queue,
            "output": self.output,
            "failure": self.failure,
            "compensations": self.compensations,
            "compensation_failures": self.compensation_failures,
            "run_state": run_state,
            "event_count": self.event_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ExecutionHandle:
    """Reference to a started execution."""

    def __init__(self, engine: WorkflowEngine, execution_id: str):
        self.engine = engine
        self.execution_id = execution_id

    async def result(self, timeout: float | None = None) -> WorkflowOutcome:
        """Wait for the terminal outcome."""
        return await self.engine.result(self.execution_id, timeout=timeout)

    async def describe(self) -> ExecutionDescription:
        return await self.engine.describe(self.execution_id)

    async def cancel(self, reason: str | None = None) -> bool:
        return await self.engine.cancel(self.execution_id, reason)

    def __repr__(self) -> str:
        return f"ExecutionHandle({self.execution_id!r})"


class WorkflowEngine:
    """
    Runs workflow definitions against a history storage and a dispatcher.

    Each execution is driven by one asyncio task and guarded by its own
    lock; different executions proceed fully in parallel.
    """

    def __init__(
        self,
        storage: HistoryStorage | None = None,
        dispatcher: ActivityDispatcher | None = None,
        listeners: list[EngineListener] | None = None,
        default_start_to_close_timeout: float = 60.0,
        config: EngineConfig | None = None,
    ):
        if config is not None:
            storage = storage or config.storage
            dispatcher = dispatcher or ActivityDispatcher(
                config.queues, default_retry_policy=config.retry_policy
            )
            listeners = listeners if listeners is not None else config.listeners
            default_start_to_close_timeout = config.start_to_close_timeout

        if storage is None:
            from durasaga.storage.backends.memory import InMemoryHistoryStorage

            storage = InMemoryHistoryStorage()

        self.storage = storage
        self.dispatcher = dispatcher or ActivityDispatcher()
        self.listeners = list(listeners or [])
        self.default_start_to_close_timeout = default_start_to_close_timeout

        self.dispatcher.on_task_completed = self._on_task_completed
        self.dispatcher.on_task_failed = self._on_task_failed
        self.dispatcher.on_attempt_failed = self._on_attempt_failed

        self._definitions: dict[str, WorkflowDefinition] = {}
        self._active: dict[str, ExecutionRuntime] = {}

    @property
    def default_retry_policy(self) -> RetryPolicy:
        return self.dispatcher.default_retry_policy

    @property
    def active_executions(self) -> list[str]:
        return sorted(self._active)

    def register(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Register a workflow definition under its ``name``."""
        if not isinstance(definition, WorkflowDefinition):
            msg = f"{definition!r} is not a workflow definition (needs name and async run)"
            raise TypeError(msg)
        self._definitions[definition.name] = definition
        logger.debug(f"Registered workflow definition '{definition.name}'")
        return definition

    def _definition(self, name: str) -> WorkflowDefinition:
        definition = self._definitions.get(name)
        if definition is None:
            msg = f"No workflow definition registered as '{name}'"
            raise UnknownWorkflowError(msg)
        return definition

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        execution_id: str,
        definition_name: str,
        input: Any = None,
        task_queue: str | None = None,
    ) -> ExecutionHandle:
        """
        Open a new execution and start running its definition.

        ``task_queue`` names the workflow queue the execution was started on;
        it is recorded in the start event and reported by ``describe``.

        Raises:
            UnknownWorkflowError: No definition registered under that name
            AlreadyRunningError: The id belongs to an active execution
            ExecutionIdReuseError: The id belongs to a terminal execution
        """
        definition = self._definition(definition_name)
        if execution_id in self._active:
            raise AlreadyRunningError(execution_id)

        started = Event(
            sequence=0,
            event_type=EventType.WORKFLOW_STARTED,
            attributes={"definition": definition_name, "input": input, "task_queue": task_queue},
        )
        execution = WorkflowExecution(
            execution_id=execution_id,
            definition_ref=definition_name,
            input=input,
            history=[started],
            created_at=started.timestamp,
            updated_at=started.timestamp,
        )

        try:
            await self.storage.create_execution(execution)
        except ExecutionExistsError as e:
            if ExecutionStatus(e.status).is_terminal:
                raise ExecutionIdReuseError(execution_id, e.status) from e
            raise AlreadyRunningError(execution_id) from e

        logger.info(f"Execution {execution_id} started ({definition_name})")
        self._launch(execution, definition)
        await self._notify_listeners("on_execution_started", execution_id, definition_name, input)
        return ExecutionHandle(self, execution_id)

    def _launch(self, execution: WorkflowExecution, definition: WorkflowDefinition) -> ExecutionRuntime:
        runtime = ExecutionRuntime(
            execution=execution,
            definition=definition,
            index=HistoryIndex.build(execution.history),
            done=asyncio.get_running_loop().create_future(),
        )
        self._active[execution.execution_id] = runtime
        runtime.driver = asyncio.create_task(self._drive(runtime))
        return runtime

    async def _drive(self, runtime: ExecutionRuntime) -> None:
        ctx = WorkflowContext(self, runtime)
        execution_id = runtime.execution.execution_id
        try:
            outcome = await runtime.definition.run(ctx, runtime.execution.input)
            if not isinstance(outcome, WorkflowOutcome):
                outcome = WorkflowOutcome(succeeded=True, output=outcome)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Execution {execution_id} raised {type(e).__name__}: {e}")
            outcome = WorkflowOutcome(succeeded=False, failure={"cause": error_to_dict(e)})

        runtime.finishing = True
        if outcome.succeeded and ctx.unobserved_cancel:
            logger.warning(
                f"Execution {execution_id} was cancelled after its last resumption point; "
                f"completing without compensation"
            )

        try:
            await self._finish(runtime, outcome)
        except Exception as e:
            logger.error(f"Could not record outcome of execution {execution_id}: {e}")
            self._active.pop(execution_id, None)
            if not runtime.done.done():
                runtime.done.set_exception(e)

    async def _finish(self, runtime: ExecutionRuntime, outcome: WorkflowOutcome) -> None:
        """Append the single terminal workflow event and release the execution."""
        execution_id = runtime.execution.execution_id
        event_type = EventType.WORKFLOW_COMPLETED if outcome.succeeded else EventType.WORKFLOW_FAILED
        await self.append_event(
            runtime,
            event_type,
            {
                "output": outcome.output,
                "failure": outcome.failure,
                "compensations": outcome.compensations,
            },
        )
        self._active.pop(execution_id, None)
        if not runtime.done.done():
            runtime.done.set_result(outcome)

        duration = time.monotonic() - runtime.started
        if outcome.succeeded:
            logger.info(f"Execution {execution_id} completed in {duration:.3f}s")
            hook = "on_execution_completed"
        else:
            logger.error(f"Execution {execution_id} failed: {outcome.failure}")
            hook = "on_execution_failed"
        await self._notify_listeners(
            hook, execution_id, runtime.execution.definition_ref, outcome, duration
        )

    async def recover(self) -> list[ExecutionHandle]:
        """
        Resume every non-terminal execution found in storage by replaying its
        history.
        """
        handles = []
        for execution in await self.storage.list_active():
            if execution.execution_id in self._active:
                continue
            definition = self._definitions.get(execution.definition_ref)
            if definition is None:
                logger.error(
                    f"Cannot recover {execution.execution_id}: definition "
                    f"'{execution.definition_ref}' is not registered"
                )
                continue
            logger.info(
                f"Recovering execution {execution.execution_id} "
                f"({len(execution.history)} events, status {execution.status.value})"
            )
            self._launch(execution, definition)
            handles.append(ExecutionHandle(self, execution.execution_id))
        return handles

    async def shutdown(self) -> None:
        """
        Stop driving executions without recording any outcome. A later
        ``recover()`` (in this or another process) resumes them.
        """
        runtimes = list(self._active.values())
        self._active.clear()
        for runtime in runtimes:
            if runtime.driver is not None:
                runtime.driver.cancel()
        drivers = [r.driver for r in runtimes if r.driver is not None]
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)
        for runtime in runtimes:
            if not runtime.done.done():
                runtime.done.cancel()
        await self.dispatcher.shutdown()
        logger.info(f"Engine shut down ({len(runtimes)} executions left active)")

    async def __aenter__(self) -> WorkflowEngine:
        await self.storage.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # ------------------------------------------------------------------
    # Queries and signals
    # ------------------------------------------------------------------

    async def _load(self, execution_id: str) -> WorkflowExecution:
        runtime = self._active.get(execution_id)
        if runtime is not None:
            return runtime.execution
        execution = await self.storage.load_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def result(self, execution_id: str, timeout: float | None = None) -> WorkflowOutcome:
        """
        Terminal outcome of an execution, waiting for it if this engine is
        driving it.
        """
        runtime = self._active.get(execution_id)
        if runtime is not None:
            return await asyncio.wait_for(asyncio.shield(runtime.done), timeout=timeout)

        execution = await self._load(execution_id)
        outcome = outcome_from_history(execution.history)
        if outcome is None:
            msg = (
                f"Execution '{execution_id}' is {execution.status.value} but not driven by "
                f"this engine; call recover() first"
            )
            raise DurasagaError(msg)
        return outcome

    async def describe(self, execution_id: str) -> ExecutionDescription:
        """
        Status of an execution plus, once terminal, its failure cause and
        compensation outcomes.

        Raises:
            ExecutionNotFoundError: Unknown execution id
        """
        execution = await self._load(execution_id)
        history = list(execution.history)
        outcome = outcome_from_history(history)

        run_state = None
        definition = self._definitions.get(execution.definition_ref)
        derive = getattr(definition, "run_state", None)
        if callable(derive):
            run_state = derive(history)

        return ExecutionDescription(
            execution_id=execution.execution_id,
            definition_ref=execution.definition_ref,
            status=execution.status,
            task_queue=history[0].attributes.get("task_queue") if history else None,
            output=outcome.output if outcome else None,
            failure=outcome.failure if outcome else None,
            compensations=outcome.compensations if outcome else [],
            run_state=run_state,
            event_count=len(history),
            created_at=execution.created_at,
            updated_at=execution.updated_at,
        )

    async def history(self, execution_id: str) -> list[Event]:
        execution = await self._load(execution_id)
        return list(execution.history)

    async def cancel(self, execution_id: str, reason: str | None = None) -> bool:
        """
        Record a cancellation request. The definition observes it at its next
        resumption point, which for a saga is the end of the step in flight;
        in-flight attempts are not interrupted.

        Returns:
            False if the execution is terminal or its definition has already
            returned
        """
        attributes = {"reason": reason}
        runtime = self._active.get(execution_id)
        if runtime is not None:
            if runtime.execution.is_terminal or runtime.finishing:
                return False
            try:
                await self.append_event(runtime, EventType.CANCEL_REQUESTED, attributes)
            except SequenceConflictError:
                if runtime.execution.is_terminal:
                    return False
                raise
        else:
            execution = await self._load(execution_id)
            if execution.is_terminal:
                return False
            event = Event(
                sequence=execution.next_sequence(),
                event_type=EventType.CANCEL_REQUESTED,
                attributes=attributes,
            )
            await self.storage.append_event(execution_id, event, execution.status)

        logger.warning(f"Cancellation requested for execution {execution_id}")
        await self._notify_listeners("on_cancel_requested", execution_id, reason)
        return True

    # ------------------------------------------------------------------
    # History and dispatch plumbing used by WorkflowContext
    # ------------------------------------------------------------------

    async def append_event(
        self, runtime: ExecutionRuntime, event_type: EventType, attributes: dict[str, Any]
    ) -> Event:
        """Durably append one event, then update the in-memory mirror."""
        async with runtime.lock:
            execution = runtime.execution
            event = Event(
                sequence=execution.next_sequence(), event_type=event_type, attributes=attributes
            )
            status = advance_status(execution.status, event_type)
            await self.storage.append_event(execution.execution_id, event, status)

            execution.history.append(event)
            execution.status = status
            execution.updated_at = event.timestamp
            runtime.index.add(event)
        return event

    async def dispatch(
        self,
        runtime: ExecutionRuntime,
        task: ActivityTask,
        retry_policy: RetryPolicy | None,
        compensation: bool,
        redelivery: bool = False,
    ) -> None:
        await self._notify_listeners(
            "on_activity_scheduled", task.execution_id, task, compensation
        )
        await self.dispatcher.schedule(task, retry_policy, replace=redelivery)

    def _runtime_for(self, task: ActivityTask) -> tuple[ExecutionRuntime, int, Event] | None:
        runtime = self._active.get(task.execution_id)
        if runtime is None:
            logger.warning(f"Report for task {task.task_id} of an execution this engine is not driving")
            return None
        seq = int(task.task_id.rsplit(":", 1)[1])
        scheduled = runtime.index.scheduled.get(seq)
        if scheduled is None or seq in runtime.index.terminal:
            logger.warning(f"Ignoring report for task {task.task_id}: no open scheduling point")
            return None
        return runtime, seq, scheduled

    async def _settle(self, task: ActivityTask, succeeded: bool, payload: dict[str, Any]) -> None:
        found = self._runtime_for(task)
        if found is None:
            return
        runtime, seq, scheduled = found
        compensation = scheduled.event_type == EventType.COMPENSATION_SCHEDULED

        if compensation:
            event_type = (
                EventType.COMPENSATION_COMPLETED if succeeded else EventType.COMPENSATION_FAILED
            )
        else:
            event_type = EventType.ACTIVITY_COMPLETED if succeeded else EventType.ACTIVITY_FAILED

        event = await self.append_event(
            runtime,
            event_type,
            {
                "seq": seq,
                "activity_type": task.activity_type,
                "attempt": task.attempt,
                **payload,
            },
        )
        waiter = runtime.waiters.get(seq)
        if waiter is not None and not waiter.done():
            waiter.set_result(event)

        if succeeded:
            await self._notify_listeners(
                "on_activity_completed", task.execution_id, task, payload.get("result"), compensation
            )
        else:
            await self._notify_listeners(
                "on_activity_failed", task.execution_id, task, payload.get("error"), compensation
            )

    async def _on_task_completed(self, task: ActivityTask, result: Any) -> None:
        await self._settle(task, True, {"result": result})

    async def _on_task_failed(self, task: ActivityTask, error: dict[str, Any]) -> None:
        await self._settle(task, False, {"error": error})

    async def _on_attempt_failed(
        self, task: ActivityTask, error: dict[str, Any], decision: RetryDecision
    ) -> None:
        found = self._runtime_for(task)
        if found is None:
            return
        runtime, seq, _ = found
        await self.append_event(
            runtime,
            EventType.ACTIVITY_ATTEMPT_FAILED,
            {
                "seq": seq,
                "activity_type": task.activity_type,
                "attempt": task.attempt,
                "next_attempt": decision.next_attempt,
                "retry_delay": decision.delay,
                "error": error,
            },
        )
        await self._notify_listeners(
            "on_activity_attempt_failed", task.execution_id, task, error, decision.delay
        )

    async def _notify_listeners(self, event_name: str, *args) -> None:
        """Notify all listeners of an event. Listener errors never break execution."""
        for listener in self.listeners:
            try:
                handler = getattr(listener, event_name, None)
                if handler:
                    result = handler(*args)
                    if inspect.iscoroutine(result):
                        await result
            except Exception as e:
                logger.warning(f"Listener {type(listener).__name__}.{event_name} error: {e}")
