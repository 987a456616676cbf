"""
Planner service.

Runs the engine over a repository snapshot and persists the resulting
deltas. Computing and persisting are separate steps: each write is issued on
its own, a failed write is recorded in the run report, and the loop carries
on with the next item.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .engine import (
    DependencySuggester,
    ErrorCode,
    PriorityBatchEngine,
    TaskRecord,
)
from .repository import PersistenceFailure, TaskRepository

logger = logging.getLogger(__name__)


@dataclass
class WriteFailure:
    operation: str
    target_id: Optional[str]
    message: str

    @classmethod
    def from_exception(cls, exc: PersistenceFailure) -> 'WriteFailure':
        return cls(operation=exc.operation, target_id=exc.target_id, message=exc.message)

    def to_dict(self) -> Dict:
        return {
            'error_code': ErrorCode.ERR_PERSISTENCE.value,
            'operation': self.operation,
            'target_id': self.target_id,
            'message': self.message,
        }


@dataclass
class RunReport:
    """Outcome of one reprioritize or auto-batch run."""
    applied: List[Dict] = field(default_factory=list)
    failures: List[WriteFailure] = field(default_factory=list)
    attempted: int = 0

    @property
    def succeeded(self) -> bool:
        """False only when there was work to do and none of it landed."""
        return self.attempted == 0 or bool(self.applied)

    def to_dict(self) -> Dict:
        return {
            'attempted': self.attempted,
            'applied': self.applied,
            'failures': [failure.to_dict() for failure in self.failures],
        }


class PlannerService:
    """
    Glue between the engine and a task repository.

    The service keeps the snapshot it last loaded and patches it after each
    successful write, so consecutive runs see their own updates without
    reloading the whole collection. Call ``invalidate`` (or pass
    ``refresh=True``) when the repository may have changed underneath.
    """

    def __init__(
        self,
        repository: TaskRepository,
        engine: Optional[PriorityBatchEngine] = None,
        suggester: Optional[DependencySuggester] = None,
        atomic_batching: bool = True
    ):
        self.repository = repository
        self.engine = engine or PriorityBatchEngine()
        self.suggester = suggester or DependencySuggester()
        self.atomic_batching = atomic_batching
        self._snapshot: Optional[List[TaskRecord]] = None

    def invalidate(self) -> None:
        self._snapshot = None

    def open_tasks(self, refresh: bool = False) -> List[TaskRecord]:
        if refresh or self._snapshot is None:
            self._snapshot = self.repository.list_open_tasks()
        return self._snapshot

    def _find(self, task_id: str) -> Optional[TaskRecord]:
        return next((t for t in self._snapshot or [] if t.id == task_id), None)

    def reprioritize(self, now: Optional[datetime] = None, refresh: bool = False) -> RunReport:
        """Recompute priorities and store every change that differs."""
        tasks = self.open_tasks(refresh)
        changes = self.engine.prioritize(tasks, now)

        report = RunReport(attempted=len(changes))
        for change in changes:
            try:
                self.repository.apply_priority(change.task_id, change.new_priority)
            except PersistenceFailure as exc:
                logger.error("Could not update priority of task %s: %s", change.task_id, exc.message)
                report.failures.append(WriteFailure.from_exception(exc))
                continue
            self._find(change.task_id).priority = change.new_priority
            report.applied.append(change.to_dict())

        logger.info(
            "Reprioritized %d of %d task(s), %d failure(s)",
            len(report.applied), report.attempted, len(report.failures)
        )
        return report

    def auto_batch(self, atomic: Optional[bool] = None, refresh: bool = False) -> RunReport:
        """
        Create batches for similar open tasks and link their members.

        With ``atomic`` the batch and its member assignments are written
        inside the repository's batch unit, so a failed assignment discards
        the whole batch. Without it every write stands alone and a failure
        can leave a batch whose members do not point back at it.
        """
        if atomic is None:
            atomic = self.atomic_batching
        tasks = self.open_tasks(refresh)
        proposals = self.engine.auto_batch(tasks)

        report = RunReport(attempted=len(proposals))
        for proposal in proposals:
            if atomic:
                self._persist_atomic(proposal, report)
            else:
                self._persist_best_effort(proposal, report)

        logger.info(
            "Created %d of %d batch(es), %d failure(s)",
            len(report.applied), report.attempted, len(report.failures)
        )
        return report

    def _persist_atomic(self, proposal, report: RunReport) -> None:
        try:
            with self.repository.batch_unit():
                batch_id = self.repository.create_batch(proposal)
                for task_id in proposal.tasks:
                    self.repository.assign_task_to_batch(task_id, batch_id)
        except PersistenceFailure as exc:
            logger.error("Discarded batch %r: %s", proposal.name, exc)
            report.failures.append(WriteFailure.from_exception(exc))
            return

        for task_id in proposal.tasks:
            self._find(task_id).batch_id = batch_id
        report.applied.append({'id': batch_id, **proposal.to_dict()})

    def _persist_best_effort(self, proposal, report: RunReport) -> None:
        try:
            batch_id = self.repository.create_batch(proposal)
        except PersistenceFailure as exc:
            logger.error("Could not create batch %r: %s", proposal.name, exc.message)
            report.failures.append(WriteFailure.from_exception(exc))
            return

        assigned = []
        for task_id in proposal.tasks:
            try:
                self.repository.assign_task_to_batch(task_id, batch_id)
            except PersistenceFailure as exc:
                logger.error("Could not assign task %s to batch %s: %s", task_id, batch_id, exc.message)
                report.failures.append(WriteFailure.from_exception(exc))
                continue
            self._find(task_id).batch_id = batch_id
            assigned.append(task_id)

        report.applied.append({'id': batch_id, **proposal.to_dict(), 'assigned': assigned})

    def suggest_dependencies(self, task_id: str, dedupe: Optional[bool] = None) -> List[str]:
        return self.suggester.suggest(task_id, self.repository.list_tasks(), dedupe=dedupe)
