"""Plan execution against the live schema.

Actions run in priority order and in batches. Each action goes through
backup capture (drops only), validation against the catalog, the DDL
statement itself and a verification read. Every DDL attempt is written to
the audit trail.

Idempotent outcomes are reported as ``skipped`` rather than ``failed``: an
index that already exists on create, or is already gone on drop, means the
action's goal holds.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config.models import IndexOptimizerConfig
from ..core import ConfigurableComponent
from ..core.exceptions import (
    ActionExecutionError,
    BackupError,
    DatabaseError,
    DatabaseErrorKind,
    ErrorCodes,
    ExecutionCancelledError,
    PlanValidationError,
    ValidationError,
)
from ..core.utils import ListUtils
from ..database.catalog import SchemaCatalog
from ..logging import AuditEventType, AuditLogger, get_audit_logger, get_logger, get_performance_logger
from .ddl import drop_index_sql
from .models import (
    ActionResult,
    ActionStatus,
    ActionType,
    ExecutionResult,
    IndexDescriptor,
    OptimizationAction,
    OptimizationPlan,
    PRIMARY_INDEX,
    Priority,
    RiskAssessment,
)


class CancellationToken:
    """Cooperative cancellation flag for plan execution.

    Example:
        >>> token = CancellationToken()
        >>> task = asyncio.create_task(executor.execute(plan, cancel_token=token))
        >>> token.cancel()
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ExecutionCancelledError(
                "Execution cancelled",
                code=ErrorCodes.EXECUTION_CANCELLED,
            )


@dataclass
class CleanupReport:
    """Outcome of an unused-index cleanup request."""

    dry_run: bool
    plan: OptimizationPlan
    execution: Optional[ExecutionResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "plan": self.plan.to_dict(),
            "execution": self.execution.to_dict() if self.execution else None,
        }


class OptimizationExecutor(ConfigurableComponent[IndexOptimizerConfig]):
    """Executes ``OptimizationPlan``s.

    Args:
        config: Optimizer configuration (batching, backup)
        catalog: Catalog used for validation, backups and verification; its
            executor runs the DDL
        audit: Audit trail, defaults to the shared ``"executor"`` trail
        clock: Wall clock for result timestamps
        monotonic: Clock the ``deadline`` argument of ``execute`` refers to
    """

    component_name = "OptimizationExecutor"

    def __init__(
        self,
        config: IndexOptimizerConfig,
        catalog: SchemaCatalog,
        *,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(config)
        self.catalog = catalog
        self.logger = get_logger("optimization.executor")
        self.perf_logger = get_performance_logger("optimization.executor", auto_log=False)
        self.audit = audit if audit is not None else get_audit_logger("executor")
        self._clock = clock
        self._monotonic = monotonic

        self._stats: Dict[str, Any] = {
            "executions": 0,
            "actions_total": 0,
            "successful": 0,
            "skipped": 0,
            "failed": 0,
            "cancelled": 0,
            "indexes_created": 0,
            "indexes_dropped": 0,
            "total_duration_ms": 0.0,
            "last_execution": None,
        }

    async def execute(
        self,
        plan: OptimizationPlan,
        *,
        cancel_token: Optional[CancellationToken] = None,
        deadline: Optional[float] = None,
    ) -> ExecutionResult:
        """Execute a plan.

        Cancellation and an expired deadline stop execution between actions;
        remaining actions are recorded as ``cancelled`` and the result is
        returned normally.

        Args:
            plan: Plan to execute
            cancel_token: Optional cancellation token
            deadline: Absolute ``time.monotonic()`` value to stop at

        Returns:
            ExecutionResult with one record per action
        """
        result = ExecutionResult(plan_id=plan.id, started_at=self._clock())
        actions = sorted(plan.actions, key=lambda a: a.priority.rank)

        self.logger.info(
            "Plan execution started",
            plan_id=plan.id,
            actions=len(actions),
            batch_size=self.config.max_batch_size,
        )

        position = 0
        stopped = False
        for batch_number, batch in enumerate(ListUtils.chunk_list(actions, self.config.max_batch_size)):
            if stopped:
                break
            if batch_number and self.config.batch_pause_seconds > 0:
                await self._pause(cancel_token, deadline)

            for action in batch:
                if self._should_stop(result, cancel_token, deadline):
                    stopped = True
                    break
                result.results.append(await self._execute_action(action))
                position += 1

        for action in actions[position:]:
            result.results.append(self._cancelled_result(action))

        result.completed_at = self._clock()
        self._record_stats(result)

        log = self.logger.warning if result.cancelled or result.deadline_exceeded else self.logger.info
        log(
            "Plan execution finished",
            plan_id=plan.id,
            successful=result.successful,
            skipped=result.skipped,
            failed=result.failed,
            cancelled_actions=result.cancelled_actions,
            cancelled=result.cancelled,
            deadline_exceeded=result.deadline_exceeded,
            duration_ms=round(result.duration_ms, 2),
        )
        return result

    def _should_stop(
        self,
        result: ExecutionResult,
        cancel_token: Optional[CancellationToken],
        deadline: Optional[float],
    ) -> bool:
        if cancel_token is not None and cancel_token.cancelled:
            result.cancelled = True
            return True
        if deadline is not None and self._monotonic() >= deadline:
            result.deadline_exceeded = True
            return True
        return False

    async def _pause(self, cancel_token: Optional[CancellationToken], deadline: Optional[float]) -> None:
        """Sleep between batches, waking early on cancellation or deadline."""
        timeout = self.config.batch_pause_seconds
        if deadline is not None:
            timeout = max(0.0, min(timeout, deadline - self._monotonic()))

        if cancel_token is None:
            await asyncio.sleep(timeout)
            return
        try:
            await asyncio.wait_for(cancel_token.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    @staticmethod
    def _cancelled_result(action: OptimizationAction) -> ActionResult:
        return ActionResult(
            action_id=action.id,
            action_type=action.type,
            table=action.table,
            index_name=action.index_name,
            status=ActionStatus.CANCELLED,
            sql=action.sql,
        )

    async def _execute_action(self, action: OptimizationAction) -> ActionResult:
        record = ActionResult(
            action_id=action.id,
            action_type=action.type,
            table=action.table,
            index_name=action.index_name,
            status=ActionStatus.SUCCESS,
            sql=action.sql,
        )
        start = time.perf_counter()

        with self.logger.context(action_id=action.id), self.perf_logger.measure(
            "ddl_action", action_type=action.type.value, table=action.table,
        ):
            try:
                if self.config.backup_enabled and self._drops_indexes(action):
                    record.backup_definition = await self._capture_backup(action)

                await self.validate_action(action)
                if await self._run_ddl(action):
                    await self._verify(action)
                    if action.replaces:
                        await self._drop_replacements(action, record)
                else:
                    record.status = ActionStatus.SKIPPED
                    record.error = "Goal already met on the server"
            except PlanValidationError as e:
                record.status = ActionStatus.SKIPPED if e.idempotent else ActionStatus.FAILED
                record.error = e.message
                record.error_type = type(e).__name__
            except (ActionExecutionError, DatabaseError) as e:
                record.status = ActionStatus.FAILED
                record.error = e.message
                record.error_type = type(e).__name__
            except Exception as e:
                # One broken action must not abort the rest of the batch
                self.logger.exception("Unexpected action failure", error=str(e))
                record.status = ActionStatus.FAILED
                record.error = str(e) or type(e).__name__
                record.error_type = type(e).__name__

        record.duration_ms = (time.perf_counter() - start) * 1000
        self._audit_action(action, record)

        self.logger.info(
            "Action executed",
            action_id=action.id,
            action_type=action.type.value,
            table=action.table,
            index=action.index_name,
            status=record.status.value,
            error=record.error,
            duration_ms=round(record.duration_ms, 2),
        )
        return record

    @staticmethod
    def _drops_indexes(action: OptimizationAction) -> bool:
        return action.type is ActionType.DROP_INDEX or bool(action.replaces)

    async def _capture_backup(self, action: OptimizationAction) -> Optional[str]:
        """Capture ``SHOW CREATE TABLE`` before a drop; failures never block."""
        try:
            definition = await self.catalog.show_create_table(action.table)
            if definition is None:
                raise BackupError(
                    f"No table definition returned for {action.table}",
                    code=ErrorCodes.BACKUP_CREATION_FAILED,
                    context={"table": action.table},
                )
        except (BackupError, DatabaseError) as e:
            self.logger.warning("Backup reference not captured", table=action.table, error=e.message)
            self.audit.log_event(
                AuditEventType.BACKUP_CREATE,
                resource=action.table,
                action="show_create_table",
                outcome="failed",
                details={"action_id": action.id, "error": e.message},
            )
            return None

        self.audit.log_event(
            AuditEventType.BACKUP_CREATE,
            resource=action.table,
            action="show_create_table",
            outcome="success",
            details={"action_id": action.id, "definition": definition},
        )
        return definition

    async def validate_action(self, action: OptimizationAction) -> None:
        """Check an action's preconditions against the live catalog.

        Raises:
            PlanValidationError: With ``idempotent=True`` when the index
                already exists on create or is already absent on drop
        """
        context = {"action_id": action.id, "table": action.table, "index": action.index_name}

        if not await self.catalog.table_exists(action.table):
            raise PlanValidationError(
                f"Table {action.table} does not exist",
                code=ErrorCodes.TABLE_NOT_FOUND,
                context=context,
            )

        if action.type.creates:
            if await self.catalog.index_exists(action.table, action.index_name):
                raise PlanValidationError(
                    f"Index {action.index_name} already exists on {action.table}",
                    idempotent=True,
                    code=ErrorCodes.INDEX_ALREADY_EXISTS,
                    context=context,
                )
            existing = set(await self.catalog.column_names(action.table))
            missing = [column for column in action.columns if column not in existing]
            if missing:
                raise PlanValidationError(
                    f"Columns {', '.join(missing)} do not exist on {action.table}",
                    code=ErrorCodes.COLUMN_NOT_FOUND,
                    context={**context, "missing_columns": missing},
                )
            for replaced in action.replaces:
                if not await self.catalog.index_exists(action.table, replaced):
                    raise PlanValidationError(
                        f"Replaced index {replaced} does not exist on {action.table}",
                        code=ErrorCodes.INDEX_NOT_FOUND,
                        context={**context, "replaced": replaced},
                    )
            return

        if action.index_name == PRIMARY_INDEX:
            raise PlanValidationError(
                "The primary key cannot be dropped",
                code=ErrorCodes.PRIMARY_KEY_PROTECTED,
                context=context,
            )
        if not await self.catalog.index_exists(action.table, action.index_name):
            raise PlanValidationError(
                f"Index {action.index_name} does not exist on {action.table}",
                idempotent=True,
                code=ErrorCodes.INDEX_NOT_FOUND,
                context=context,
            )

    async def _run_ddl(self, action: OptimizationAction) -> bool:
        """Run the action's statement.

        Returns:
            False when the server reports the goal already met
        """
        try:
            await self.catalog.executor.execute(action.sql)
        except DatabaseError as e:
            if action.type.creates and e.kind is DatabaseErrorKind.DUPLICATE:
                return False
            if action.type is ActionType.DROP_INDEX and e.kind is DatabaseErrorKind.NOT_FOUND:
                return False
            raise ActionExecutionError(
                f"DDL failed: {e.message}",
                code=ErrorCodes.DDL_FAILED,
                context={"action_id": action.id, "kind": e.kind.value},
                cause=e,
            ) from e
        return True

    async def _verify(self, action: OptimizationAction) -> None:
        present = await self.catalog.index_exists(action.table, action.index_name)
        if present != action.type.creates:
            expected = "present" if action.type.creates else "absent"
            raise ActionExecutionError(
                f"Index {action.index_name} on {action.table} is not {expected} after DDL",
                code=ErrorCodes.VERIFICATION_FAILED,
                context={"action_id": action.id},
            )

    async def _drop_replacements(self, action: OptimizationAction, record: ActionResult) -> None:
        """Best-effort drop of the indexes a composite replaces."""
        for name in action.replaces:
            if name == action.index_name or name == PRIMARY_INDEX:
                continue
            try:
                sql = drop_index_sql(action.table, name)
                await self.catalog.executor.execute(sql)
            except ValidationError as e:
                record.failed_replacements.append(name)
                self.logger.warning("Replaced index not dropped", table=action.table, index=name, error=e.message)
                continue
            except DatabaseError as e:
                if e.kind is DatabaseErrorKind.NOT_FOUND:
                    self.logger.info("Replaced index already absent", table=action.table, index=name)
                    continue
                record.failed_replacements.append(name)
                self.logger.warning("Replaced index not dropped", table=action.table, index=name, error=e.message)
                self.audit.log_ddl(
                    AuditEventType.INDEX_DROP,
                    table=action.table,
                    index=name,
                    sql=sql,
                    outcome=ActionStatus.FAILED.value,
                    error=e.message,
                    action_id=action.id,
                    replaced_by=action.index_name,
                )
                continue

            record.dropped_replacements.append(name)
            self.audit.log_ddl(
                AuditEventType.INDEX_DROP,
                table=action.table,
                index=name,
                sql=sql,
                outcome=ActionStatus.SUCCESS.value,
                action_id=action.id,
                replaced_by=action.index_name,
            )

    def _audit_action(self, action: OptimizationAction, record: ActionResult) -> None:
        event_type = AuditEventType.INDEX_CREATE if action.type.creates else AuditEventType.INDEX_DROP
        self.audit.log_ddl(
            event_type,
            table=action.table,
            index=action.index_name,
            sql=action.sql,
            outcome=record.status.value,
            error=record.error,
            action_id=action.id,
            reason=action.reason,
            duration_ms=round(record.duration_ms, 3),
        )

    async def cleanup_unused_indexes(
        self,
        indexes: Sequence[IndexDescriptor],
        *,
        dry_run: bool = True,
        cancel_token: Optional[CancellationToken] = None,
    ) -> CleanupReport:
        """Drop the given unused indexes.

        Args:
            indexes: Unused index descriptors, usually ``report.unused``
            dry_run: Only build the plan when True

        Returns:
            CleanupReport with the plan and, unless dry run, its execution
        """
        actions: List[OptimizationAction] = []
        for index in indexes:
            if index.is_primary:
                continue
            if index.unique:
                self.logger.info("Cleanup skipped, index enforces uniqueness", index=index.qualified_name)
                continue
            try:
                sql = drop_index_sql(index.table, index.name)
            except ValidationError as e:
                self.logger.warning("Cleanup skipped, unsafe identifier", index=index.qualified_name, error=e.message)
                continue
            actions.append(OptimizationAction(
                id=f"cleanup_{len(actions) + 1}_{index.table}_{index.name}",
                type=ActionType.DROP_INDEX,
                table=index.table,
                index_name=index.name,
                sql=sql,
                priority=Priority.MEDIUM,
                reason="unused",
                impact=10.0,
                columns=index.column_names,
            ))

        plan = OptimizationPlan(
            id=f"cleanup_{int(self._clock())}",
            created_at=self._clock(),
            actions=actions,
            priority=Priority.MEDIUM if actions else Priority.LOW,
            risk=RiskAssessment(),
            total_impact=min(100.0, 10.0 * len(actions)),
        )

        self.logger.info("Unused index cleanup planned", indexes=len(actions), dry_run=dry_run)
        if dry_run:
            return CleanupReport(dry_run=True, plan=plan)

        execution = await self.execute(plan, cancel_token=cancel_token)
        return CleanupReport(dry_run=False, plan=plan, execution=execution)

    def _record_stats(self, result: ExecutionResult) -> None:
        self._stats["executions"] += 1
        self._stats["actions_total"] += len(result.results)
        self._stats["successful"] += result.successful
        self._stats["skipped"] += result.skipped
        self._stats["failed"] += result.failed
        self._stats["cancelled"] += result.cancelled_actions
        self._stats["indexes_created"] += len(result.indexes_created)
        self._stats["indexes_dropped"] += len(result.indexes_dropped)
        self._stats["total_duration_ms"] += result.duration_ms
        self._stats["last_execution"] = result.completed_at

    def get_stats(self) -> Dict[str, Any]:
        """Totals across all executions."""
        stats = dict(self._stats)
        attempted = stats["successful"] + stats["skipped"] + stats["failed"]
        stats["success_rate"] = (
            (stats["successful"] + stats["skipped"]) / attempted * 100 if attempted else 0.0
        )
        stats["ddl_timing"] = self.perf_logger.get_metrics("ddl_action").to_dict()
        return stats

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics.update(self.get_stats())
        return metrics
