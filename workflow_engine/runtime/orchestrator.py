# workflow_engine/runtime/orchestrator.py
"""
Workflow Orchestrator - executes a Graph against the engine services.

Supports:
- Dependency-driven scheduling with a bounded number of in-flight steps
- Parallel fan-out/fan-in with fail-fast on required members
- Conditional routing with skip propagation
- Recursive decomposition with depth and progress guards
- Memoization with single-flight dispatch of identical work
- Retry, circuit breaking and timeouts through the resilience policy
- Saga compensation when a required step fails or the run is cancelled

Context writes are folded into the shared Context in canonical topological
order, and every step reads the initial context plus the writes of its own
ancestors, so the final context never depends on completion timing.
"""

import asyncio
import copy
import inspect
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..cache.fingerprint import compute_fingerprint
from ..cache.tiers import MISS
from ..cancellation import CancellationToken
from ..engine_logging import get_logger, sanitize_for_logging
from ..errors import (
    CapabilityNotFoundError,
    PermanentError,
    RecursionLimitError,
    RunCancelledError,
    ValidationError,
    classify_error,
)
from ..graph.model import Graph, Step, StepKind
from ..graph.validate import topological_order, validate
from ..models import RunResult, RunStatus, StepError, StepResult, StepStatus, Task, TaskResult, thaw
from ..registry import capability_name
from .context import Context, ContextView, merge_group_writes
from .services import EngineServices, get_services
from .state import ExecutionState, RunStateStore

logger = get_logger(__name__)

StepOutcome = Tuple[StepResult, Dict[str, Any]]


def _step_error(
    step_id: str,
    capability: Optional[str],
    error: BaseException,
    attempts: int,
    phase: str = "execute",
) -> StepError:
    return StepError(
        step_id=step_id,
        capability=capability,
        error_class=classify_error(error),
        error_type=type(error).__name__,
        message=str(error) or type(error).__name__,
        attempts=attempts,
        phase=phase,
    )


def _branch_label(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _unwrap(value: Any) -> Tuple[Any, Dict[str, Any]]:
    """Split an executor return value into output and context updates."""
    if isinstance(value, TaskResult):
        return value.output, dict(value.context_updates or {})
    return value, {}


class _Run:
    """Scheduling state for one execution of one graph (top level or recursive child)."""

    def __init__(
        self,
        orchestrator: "Orchestrator",
        graph: Graph,
        initial: Mapping[str, Any],
        *,
        run_id: str,
        token: CancellationToken,
        worker_pool: asyncio.Semaphore,
        concurrency_limit: int,
        dry_run: bool = False,
        force_refresh: bool = False,
        depth: int = 0,
        trail: Tuple[str, ...] = (),
        prefix: str = "",
    ):
        self.orchestrator = orchestrator
        self.services: EngineServices = orchestrator.services
        self.graph = graph
        self.run_id = run_id
        self.token = token
        self.worker_pool = worker_pool
        self.concurrency_limit = concurrency_limit
        self.dry_run = dry_run
        self.force_refresh = force_refresh
        self.depth = depth
        self.trail = trail
        self.prefix = prefix

        self.order = topological_order(graph)
        self.initial = copy.deepcopy(dict(initial))
        self.context = Context(self.initial)
        self.state = ExecutionState.for_steps(run_id, graph.name, graph.all_step_ids())

        self.tasks: Dict[str, Task] = {}
        self.chosen: Dict[str, str] = {}
        self.children: Dict[str, "_Run"] = {}
        self.errors: List[StepError] = []
        self.compensation_order: List[str] = []
        self.compensations_run = 0
        self.compensation_failed = False

        self.halted = False
        self.cancelled = False
        self.required_failure = False
        self.fatal: Optional[RecursionLimitError] = None
        self._cursor = 0

    def _extra(self, step: Optional[Step] = None, **fields: Any) -> Dict[str, Any]:
        extra = {'run_id': self.run_id, 'depth': self.depth}
        if step is not None:
            extra['step_id'] = self.prefix + step.id
            extra['capability'] = step.capability
        extra.update(fields)
        return extra

    # Scheduling

    async def execute(self) -> RunResult:
        started = time.time()
        running: Dict[asyncio.Task, str] = {}
        cancel_wait = asyncio.ensure_future(self.token.wait())

        try:
            while True:
                if not self.halted and self.token.cancelled:
                    self._halt(f"cancellation requested: {self.token.reason}", cancelled=True)

                if not self.halted:
                    for step in self._ready_steps():
                        if len(running) >= self.concurrency_limit:
                            break
                        self.state.start(step.id)
                        logger.debug(f"Dispatching step {step.id} ({step.kind.value})", extra=self._extra(step))
                        running[asyncio.create_task(self._run_step(step))] = step.id

                if not running:
                    break

                waiters = set(running)
                if not cancel_wait.done():
                    waiters.add(cancel_wait)
                done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

                for finished in done:
                    if finished is cancel_wait:
                        continue
                    running.pop(finished)
                    finished.result()

                self._advance_merge_cursor()
        finally:
            cancel_wait.cancel()
            for leftover in running:
                leftover.cancel()

        reason = "run cancelled" if self.cancelled else "run halted"
        for step_id in self.state.pending():
            self._skip(step_id, reason)
        self._advance_merge_cursor()

        if (self.required_failure or self.fatal or self.cancelled) and not self.dry_run:
            only_required = self.cancelled and not self.required_failure and self.fatal is None
            await self._compensate(only_required)

        return self._build_result(started)

    def _ready_steps(self) -> List[Step]:
        """
        PENDING steps whose dependencies are all terminal, ordered by priority
        then declared position. Steps that can no longer run are skipped here.
        """
        ready = []
        for step_id in self.order:
            if self.state.status(step_id) != StepStatus.PENDING:
                continue
            dependencies = self.graph.dependencies(step_id)
            if not all(self.state.is_terminal(dependency) for dependency in dependencies):
                continue

            reason = self._skip_reason(step_id, dependencies)
            if reason:
                self._skip(step_id, reason)
                continue
            ready.append(self.graph.step(step_id))

        ready.sort(key=lambda step: (-step.priority, self.graph.declared_index(step.id)))
        return ready

    def _skip_reason(self, step_id: str, dependencies) -> Optional[str]:
        for parent in sorted(self.graph.branch_parents(step_id)):
            if self.chosen.get(parent) != step_id:
                return f"branch not taken at {parent}"
        if dependencies and all(self.state.status(dep) == StepStatus.SKIPPED for dep in dependencies):
            return "all dependencies skipped"
        return None

    def _skip(self, step_id: str, reason: str) -> None:
        now = time.time()
        self.state.finish(step_id, StepResult(step_id=step_id, status=StepStatus.SKIPPED, skip_reason=reason, completed_at=now))
        if step_id in self.graph:
            for member in self.graph.step(step_id).members:
                if self.state.status(member.id) == StepStatus.PENDING:
                    self.state.finish(
                        member.id,
                        StepResult(step_id=member.id, status=StepStatus.SKIPPED, skip_reason=reason, completed_at=now),
                    )
        logger.debug(f"Skipped step {step_id}: {reason}", extra={'run_id': self.run_id, 'step_id': self.prefix + step_id})

    def _halt(self, reason: str, cancelled: bool = False) -> None:
        if cancelled:
            self.cancelled = True
        if not self.halted:
            self.halted = True
            logger.warning(f"Run {self.run_id} halted: {reason}", extra=self._extra())

    def _advance_merge_cursor(self) -> None:
        while self._cursor < len(self.order):
            step_id = self.order[self._cursor]
            if not self.state.is_terminal(step_id):
                break
            if self.state.status(step_id) == StepStatus.SUCCEEDED:
                self.context.merge(step_id, self.state.writes.get(step_id, {}))
            self._cursor += 1

    def _view_for(self, step_id: str) -> ContextView:
        ancestors = self.graph.ancestors(step_id)
        layers = [
            self.state.writes[ancestor]
            for ancestor in self.order
            if ancestor in ancestors and ancestor in self.state.writes
        ]
        return ContextView.layered(self.initial, layers, generation=self.context.generation)

    # Step execution

    async def _run_step(self, step: Step) -> None:
        view = self._view_for(step.id)
        try:
            if step.kind == StepKind.PARALLEL:
                result, writes = await self._run_parallel(step, view)
            elif step.kind == StepKind.CONDITIONAL:
                result, writes = self._run_conditional(step, view)
            elif step.kind == StepKind.RECURSIVE:
                result, writes = await self._run_recursive(step, view)
            else:
                result, writes = await self._run_leaf(step, view)
        except RecursionLimitError as e:
            if self.fatal is None:
                self.fatal = e
            result, writes = self._failed(step, e, 0), {}
        except Exception as e:
            result, writes = self._failed(step, e, 0), {}

        self._complete(step, result, writes)

    def _complete(self, step: Step, result: StepResult, writes: Dict[str, Any]) -> None:
        self.state.finish(step.id, result)
        extra = self._extra(step, attempt=result.attempts, duration_ms=int((result.duration_s or 0) * 1000))

        if result.status == StepStatus.SUCCEEDED:
            self.state.writes[step.id] = writes
            logger.info(
                f"Step {step.id} succeeded{' (cached)' if result.cached else ''} in {result.duration_s or 0:.3f}s",
                extra=extra
            )
            return

        if result.status == StepStatus.SKIPPED:
            logger.info(f"Step {step.id} skipped: {result.skip_reason}", extra=extra)
            return

        if result.error is not None and step.kind != StepKind.PARALLEL:
            self.errors.append(result.error)

        if self.fatal is not None:
            self._halt(f"{type(self.fatal).__name__} in {step.id}")
        elif step.required:
            self.required_failure = True
            self._halt(f"required step {step.id} failed")
        else:
            logger.warning(f"Optional step {step.id} failed, continuing", extra=extra)

    def _failed(self, step: Step, error: BaseException, attempts: int, started: Optional[float] = None) -> StepResult:
        step_error = _step_error(step.id, step.capability, error, attempts)
        log = logger.error if step.required else logger.warning
        log(
            f"Step {step.id} failed ({step_error.error_class.value}): {step_error.message}",
            extra=self._extra(step, attempt=attempts)
        )
        return StepResult(
            step_id=step.id,
            status=StepStatus.FAILED,
            attempts=attempts,
            error=step_error,
            started_at=started,
        )

    def _with_output_key(self, step: Step, output: Any, writes: Dict[str, Any]) -> Dict[str, Any]:
        writes = dict(writes)
        if step.output_key:
            writes[step.output_key] = output
        return writes

    def _cached_outcome(self, step: Step, payload: Dict[str, Any], started: float) -> StepOutcome:
        output = payload.get("output")
        result = StepResult(step_id=step.id, status=StepStatus.SUCCEEDED, output=output, cached=True, started_at=started)
        return result, self._with_output_key(step, output, payload.get("context_updates", {}))

    async def _run_leaf(self, step: Step, view: ContextView) -> StepOutcome:
        started = time.time()
        policy = step.retry_policy or self.services.policy.default_retry

        try:
            task = Task.create(
                step.capability,
                step.resolve_input(view),
                constraints={
                    "timeout_seconds": step.timeout_seconds,
                    "max_attempts": policy.max_attempts,
                    "priority": step.priority,
                },
                step_id=step.id,
            )
        except Exception as e:
            return self._failed(step, e, 0, started), {}
        self.tasks[step.id] = task

        if self.dry_run:
            logger.info(
                f"[dry-run] {step.id} -> {step.capability} input={sanitize_for_logging(thaw(task.input))}",
                extra=self._extra(step)
            )
            return StepResult(step_id=step.id, status=StepStatus.SUCCEEDED, started_at=started), {}

        try:
            definition = self.services.registry.definition(step.capability)
        except CapabilityNotFoundError as e:
            return self._failed(step, e, 0, started), {}

        fingerprint = None
        bypass = step.cache_bypass or self.force_refresh
        if step.cacheable:
            try:
                fingerprint = compute_fingerprint(
                    definition.name,
                    definition.normalized_input(thaw(task.input)),
                    view.slice(definition.context_keys),
                )
            except Exception as e:
                return self._failed(step, e, 0, started), {}

            while True:
                cached = self.services.cache.get(fingerprint, bypass=bypass)
                if cached is not MISS:
                    return self._cached_outcome(step, cached, started)

                leader = self.services.inflight.get(fingerprint)
                if leader is None or bypass:
                    break
                logger.debug(f"Step {step.id} joined in-flight dispatch {fingerprint[:12]}", extra=self._extra(step))
                try:
                    payload = await asyncio.shield(leader)
                except RunCancelledError:
                    if self.token.cancelled:
                        return StepResult(
                            step_id=step.id,
                            status=StepStatus.SKIPPED,
                            skip_reason="run cancelled",
                            started_at=started,
                        ), {}
                    # the leader's run was cancelled, not ours
                    logger.info(
                        f"In-flight dispatch {fingerprint[:12]} was cancelled, step {step.id} dispatching itself",
                        extra=self._extra(step),
                    )
                    continue
                except Exception as e:
                    return self._failed(step, e, 0, started), {}
                return self._cached_outcome(step, payload, started)

        flight: Optional[asyncio.Future] = None
        if fingerprint is not None and fingerprint not in self.services.inflight:
            flight = asyncio.get_running_loop().create_future()
            self.services.inflight[fingerprint] = flight

        attempt_views: List[ContextView] = []

        async def invoke() -> Any:
            attempt_view = view.child()
            attempt_views.append(attempt_view)
            async with self.worker_pool:
                if step.kind == StepKind.BATCH:
                    return await self.services.batcher.submit(task, attempt_view, self.token)
                return await self.services.registry.dispatch(task, attempt_view)

        try:
            outcome = await self.services.policy.call(
                definition.name,
                invoke,
                retry_policy=policy,
                timeout_s=step.timeout_seconds,
                token=self.token,
                step_id=self.prefix + step.id,
            )

            if outcome.ok:
                output, updates = _unwrap(outcome.value)
                writes = dict(attempt_views[-1].proposed) if attempt_views else {}
                writes.update(updates)
                payload = {"output": output, "context_updates": writes}
                if fingerprint is not None:
                    ttl = step.cache_ttl if step.cache_ttl is not None else definition.cache_ttl
                    self.services.cache.put(fingerprint, payload, ttl=ttl)
                if flight is not None:
                    flight.set_result(payload)
                result = StepResult(
                    step_id=step.id,
                    status=StepStatus.SUCCEEDED,
                    output=output,
                    attempts=outcome.attempts,
                    started_at=started,
                )
                return result, self._with_output_key(step, output, writes)

            if flight is not None:
                flight.set_exception(outcome.error)
                flight.exception()

            if isinstance(outcome.error, RunCancelledError):
                return StepResult(
                    step_id=step.id,
                    status=StepStatus.SKIPPED,
                    attempts=outcome.attempts,
                    skip_reason="run cancelled",
                    started_at=started,
                ), {}
            return self._failed(step, outcome.error, outcome.attempts, started), {}
        finally:
            if flight is not None:
                if not flight.done():
                    flight.set_exception(RunCancelledError(f"Dispatch of {step.id} was cancelled"))
                    flight.exception()
                self.services.inflight.pop(fingerprint, None)

    async def _run_parallel(self, group: Step, view: ContextView) -> StepOutcome:
        """
        Fan out all members, join on completion.

        A required member failing cancels the siblings still in flight.
        Member writes are combined with ``merge_group_writes``.
        """
        started = time.time()
        members = list(group.members)
        member_tasks: Dict[asyncio.Task, Step] = {}
        for member in members:
            self.state.start(member.id)
            member_tasks[asyncio.create_task(self._run_leaf(member, view.child()))] = member

        outcomes: Dict[str, StepOutcome] = {}
        failed_member: Optional[Step] = None
        pending = set(member_tasks)

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    member = member_tasks[finished]
                    outcomes[member.id] = finished.result()
                    if failed_member is None and member.required and outcomes[member.id][0].status == StepStatus.FAILED:
                        failed_member = member

                if failed_member is not None and pending:
                    logger.warning(
                        f"Member {failed_member.id} of {group.id} failed, cancelling {len(pending)} siblings",
                        extra=self._extra(group)
                    )
                    for sibling in pending:
                        sibling.cancel()
                    await asyncio.gather(*pending, return_exceptions=True)
                    for sibling in pending:
                        member = member_tasks[sibling]
                        if sibling.cancelled():
                            outcomes[member.id] = (StepResult(
                                step_id=member.id,
                                status=StepStatus.SKIPPED,
                                skip_reason=f"cancelled after {failed_member.id} failed",
                                started_at=started,
                            ), {})
                        else:
                            outcomes[member.id] = sibling.result()
                    pending = set()
        except asyncio.CancelledError:
            for member_task in member_tasks:
                member_task.cancel()
            raise

        group_writes = []
        group_output = {}
        attempts = 0
        for index, member in enumerate(members):
            result, writes = outcomes[member.id]
            self.state.finish(member.id, result)
            attempts += result.attempts
            if result.status == StepStatus.SUCCEEDED:
                group_writes.append((member.priority, index, writes))
                group_output[member.id] = result.output
            elif result.status == StepStatus.FAILED and result.error is not None:
                self.errors.append(result.error)

        if failed_member is not None:
            return StepResult(
                step_id=group.id,
                status=StepStatus.FAILED,
                output=group_output,
                attempts=attempts,
                error=outcomes[failed_member.id][0].error,
                started_at=started,
            ), {}

        result = StepResult(
            step_id=group.id,
            status=StepStatus.SUCCEEDED,
            output=group_output,
            attempts=attempts,
            started_at=started,
        )
        return result, self._with_output_key(group, group_output, merge_group_writes(group_writes))

    def _run_conditional(self, step: Step, view: ContextView) -> StepOutcome:
        started = time.time()
        try:
            label = _branch_label(step.predicate(view))
        except Exception as e:
            return self._failed(step, e, 1, started), {}

        target = step.branches.get(label)
        if target is None and step.default_branch is not None:
            logger.debug(f"Conditional {step.id} fell back to default branch for {label!r}", extra=self._extra(step))
            label = step.default_branch
            target = step.branches[label]
        if target is None:
            error = ValidationError(f"Conditional step {step.id} selected unknown branch {label!r}")
            return self._failed(step, error, 1, started), {}

        self.chosen[step.id] = target
        logger.info(f"Conditional {step.id} chose branch {label} -> {target}", extra=self._extra(step))
        result = StepResult(step_id=step.id, status=StepStatus.SUCCEEDED, output=label, attempts=1, started_at=started)
        return result, self._with_output_key(step, label, {})

    async def _run_recursive(self, step: Step, view: ContextView) -> StepOutcome:
        """
        Expand the step into a child graph and run it one level deeper.

        Raises:
            RecursionLimitError: depth exceeds the step's maximum, or the
                level repeats the previous level's capability and input
        """
        started = time.time()
        depth = self.depth + 1
        max_depth = step.max_depth or self.orchestrator.max_recursion_depth

        try:
            step_input = step.resolve_input(view)
            fingerprint = compute_fingerprint(step.capability, step_input)
        except Exception as e:
            return self._failed(step, e, 0, started), {}

        if depth > max_depth:
            raise RecursionLimitError(
                f"Recursive step {self.prefix}{step.id} exceeded maximum depth {max_depth}",
                step_id=step.id,
                depth=depth,
            )
        if self.trail and self.trail[-1] == fingerprint:
            raise RecursionLimitError(
                f"Recursive step {self.prefix}{step.id} made no progress at depth {depth}",
                step_id=step.id,
                depth=depth,
            )

        try:
            child_graph = step.expand(view)
            validate(child_graph)
        except Exception as e:
            return self._failed(step, e, 0, started), {}

        logger.info(
            f"Expanding {step.id} into {child_graph.name} ({len(child_graph)} steps) at depth {depth}",
            extra=self._extra(step)
        )
        child = _Run(
            self.orchestrator,
            child_graph,
            view.as_dict(),
            run_id=self.run_id,
            token=self.token,
            worker_pool=self.worker_pool,
            concurrency_limit=self.concurrency_limit,
            dry_run=self.dry_run,
            force_refresh=self.force_refresh,
            depth=depth,
            trail=self.trail + (fingerprint,),
            prefix=f"{self.prefix}{step.id}/",
        )
        self.children[step.id] = child
        child_result = await child.execute()

        self.errors.extend(child.errors)
        self.compensation_order.extend(child.compensation_order)
        self.compensations_run += child.compensations_run
        self.compensation_failed = self.compensation_failed or child.compensation_failed

        if child.fatal is not None:
            raise child.fatal

        output = {
            step_id: result.output
            for step_id, result in child.state.results.items()
            if result.status == StepStatus.SUCCEEDED
        }
        if child_result.overall_status not in (RunStatus.SUCCEEDED, RunStatus.PARTIALLY_SUCCEEDED):
            error = PermanentError(f"Child workflow {child_graph.name} ended {child_result.overall_status.value}")
            result = self._failed(step, error, 1, started)
            result.output = output
            return result, {}

        result = StepResult(step_id=step.id, status=StepStatus.SUCCEEDED, output=output, attempts=1, started_at=started)
        return result, self._with_output_key(step, output, child.collected_writes())

    def collected_writes(self) -> Dict[str, Any]:
        """Writes of all succeeded steps, applied in canonical order."""
        writes: Dict[str, Any] = {}
        for step_id in self.order:
            if self.state.status(step_id) in (StepStatus.SUCCEEDED, StepStatus.COMPENSATED):
                writes.update(self.state.writes.get(step_id, {}))
        return writes

    # Compensation

    async def _compensate(self, only_required: bool) -> None:
        """Undo succeeded steps in reverse canonical order."""
        logger.warning(
            f"Compensating run {self.run_id}{' (required steps only)' if only_required else ''}",
            extra=self._extra()
        )
        for step_id in reversed(self.order):
            step = self.graph.step(step_id)
            status = self.state.status(step_id)

            if step.kind == StepKind.PARALLEL:
                if status not in (StepStatus.SUCCEEDED, StepStatus.FAILED):
                    continue
                compensated = False
                for member in reversed(step.members):
                    if only_required and not (step.required and member.required):
                        continue
                    compensated = await self._compensate_step(member) or compensated
                if compensated and status == StepStatus.SUCCEEDED:
                    self.state.set_status(step_id, StepStatus.COMPENSATED)
                    self.state.results[step_id].compensated = True
                continue

            if status != StepStatus.SUCCEEDED or (only_required and not step.required):
                continue

            if step.kind == StepKind.RECURSIVE and step_id in self.children:
                await self._compensate_child(step, only_required)
            else:
                await self._compensate_step(step)

    async def _compensate_child(self, step: Step, only_required: bool) -> None:
        child = self.children[step.id]
        before_order = len(child.compensation_order)
        before_run = child.compensations_run
        await child._compensate(only_required)

        self.compensation_order.extend(child.compensation_order[before_order:])
        self.compensations_run += child.compensations_run - before_run
        self.compensation_failed = self.compensation_failed or child.compensation_failed
        if child.compensations_run > before_run and not child.compensation_failed:
            self.state.set_status(step.id, StepStatus.COMPENSATED)
            self.state.results[step.id].compensated = True

    async def _compensate_step(self, step: Step) -> bool:
        result = self.state.results[step.id]
        if result.status != StepStatus.SUCCEEDED:
            return False
        if step.compensation is None:
            logger.info(f"Step {step.id} has no compensation, left as-is", extra=self._extra(step))
            return False

        task = self.tasks.get(step.id)
        self.compensations_run += 1
        try:
            if callable(step.compensation):
                value = step.compensation(task, result.output)
                if inspect.isawaitable(value):
                    await value
            else:
                capability = capability_name(step.compensation)
                undo_task = Task.create(
                    capability,
                    {
                        "step_id": step.id,
                        "input": thaw(task.input) if task else {},
                        "output": result.output,
                    },
                    step_id=step.id,
                )
                view = self.context.view()
                outcome = await self.services.policy.call(
                    capability,
                    lambda: self.services.registry.dispatch(undo_task, view.child()),
                    retry_policy=step.retry_policy,
                    step_id=self.prefix + step.id,
                )
                if not outcome.ok:
                    raise outcome.error
        except Exception as e:
            self.compensation_failed = True
            self.errors.append(_step_error(step.id, step.capability, e, 1, phase="compensate"))
            logger.error(f"Compensation of {step.id} failed: {e}", extra=self._extra(step))
            return False

        self.state.set_status(step.id, StepStatus.COMPENSATED)
        result.compensated = True
        self.compensation_order.append(self.prefix + step.id)
        logger.warning(f"Compensated step {step.id}", extra=self._extra(step))
        return True

    # Results

    def all_results(self) -> Dict[str, StepResult]:
        results = dict(self.state.results)
        for step_id, child in self.children.items():
            for child_id, result in child.all_results().items():
                results[f"{step_id}/{child_id}"] = result
        return results

    def _overall_status(self) -> RunStatus:
        if self.required_failure or self.fatal is not None or self.cancelled:
            if self.compensations_run and not self.compensation_failed:
                return RunStatus.COMPENSATED
            return RunStatus.FAILED
        if any(status == StepStatus.FAILED for status in self.state.statuses.values()):
            return RunStatus.PARTIALLY_SUCCEEDED
        return RunStatus.SUCCEEDED

    def _build_result(self, started: float) -> RunResult:
        return RunResult(
            run_id=self.run_id,
            final_context=self.context.to_dict(),
            step_results=self.all_results(),
            overall_status=self._overall_status(),
            errors=list(self.errors),
            compensation_order=list(self.compensation_order),
            cancelled=self.cancelled,
            started_at=started,
            completed_at=time.time(),
        )


class Orchestrator:
    """
    Executes workflow graphs.

    One Orchestrator can run many graphs, concurrently if needed; every run
    gets its own ExecutionState and Context while sharing the engine services.
    """

    def __init__(
        self,
        services: Optional[EngineServices] = None,
        concurrency_limit: Optional[int] = None,
        max_recursion_depth: Optional[int] = None,
        state_store: Optional[RunStateStore] = None,
    ):
        self.services = services or get_services()
        self.concurrency_limit = concurrency_limit or self.services.concurrency_limit
        self.max_recursion_depth = max_recursion_depth or self.services.max_recursion_depth
        if state_store is None and self.services.state_path is not None:
            state_store = RunStateStore(self.services.state_path)
        self.state_store = state_store

    async def run(
        self,
        graph: Graph,
        initial_context: Optional[Mapping[str, Any]] = None,
        concurrency_limit: Optional[int] = None,
        *,
        token: Optional[CancellationToken] = None,
        dry_run: bool = False,
        force_refresh: bool = False,
        run_id: Optional[str] = None,
    ) -> RunResult:
        """
        Execute a workflow graph.

        Args:
            graph: Workflow to run; validated before anything is dispatched
            initial_context: Context the run starts from
            concurrency_limit: Maximum steps (and executor calls) in flight
            token: Cancellation token for this run
            dry_run: Walk the graph without dispatching executors
            force_refresh: Bypass cache lookups for every step
            run_id: Identifier for logs and persisted state

        Returns:
            RunResult with final context, per-step results and overall status

        Raises:
            GraphValidationError: the graph is malformed
            RecursionLimitError: a recursive step hit its bound; the partial
                result (after compensation) is attached as ``run_result``
        """
        validate(graph)
        limit = self.concurrency_limit if concurrency_limit is None else concurrency_limit
        if limit < 1:
            raise ValidationError(f"concurrency_limit must be >= 1, got {limit}")

        run_id = run_id or f"run:{uuid.uuid4().hex[:16]}"
        run = _Run(
            self,
            graph,
            initial_context or {},
            run_id=run_id,
            token=token or CancellationToken(),
            worker_pool=asyncio.Semaphore(limit),
            concurrency_limit=limit,
            dry_run=dry_run,
            force_refresh=force_refresh,
        )

        logger.info(
            f"Starting workflow {graph.name}{' (dry run)' if dry_run else ''}: {len(graph)} steps, limit {limit}",
            extra={'run_id': run_id}
        )
        result = await run.execute()
        logger.info(
            f"Workflow {graph.name} finished with status {result.overall_status.value} "
            f"in {result.completed_at - result.started_at:.3f}s",
            extra={'run_id': run_id, 'duration_ms': int((result.completed_at - result.started_at) * 1000)}
        )

        if self.state_store is not None:
            await self.state_store.save_run(result, graph.name)

        if run.fatal is not None:
            run.fatal.run_result = result
            raise run.fatal
        return result


async def run_workflow(
    graph: Graph,
    initial_context: Optional[Mapping[str, Any]] = None,
    concurrency_limit: Optional[int] = None,
    services: Optional[EngineServices] = None,
    **options: Any,
) -> RunResult:
    """
    Run ``graph`` once with the shared engine services.

    Services are initialized for the duration of the call, so persisted cache
    and breaker snapshots are loaded before and written after the run.
    """
    services = services or get_services()
    async with services:
        return await Orchestrator(services).run(graph, initial_context, concurrency_limit, **options)
