"""
Task repositories.

A repository is the persistence collaborator of the planner: it hands out
snapshots of open tasks and applies the engine's deltas one write at a time.
Every failed write surfaces as ``PersistenceFailure`` so callers can record
it and move on to the next item.
"""

import copy
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager, nullcontext
from typing import Dict, Iterable, List, Optional

from django.db import DatabaseError, transaction

from .engine import BatchProposal, Priority, TaskRecord, parse_tasks
from .models import Task, TaskBatch, new_id

logger = logging.getLogger(__name__)


class PersistenceFailure(Exception):
    """A single repository write failed."""

    def __init__(self, operation: str, target_id: Optional[str], message: str):
        super().__init__(f"{operation} failed for {target_id}: {message}")
        self.operation = operation
        self.target_id = target_id
        self.message = message


class TaskRepository(ABC):
    """Interface the planner service persists through."""

    @abstractmethod
    def list_open_tasks(self) -> List[TaskRecord]:
        """Return every task whose status is not completed."""

    @abstractmethod
    def list_tasks(self) -> List[TaskRecord]:
        """Return every task, completed ones included."""

    @abstractmethod
    def apply_priority(self, task_id: str, priority: Priority) -> None:
        """Store a new priority for one task."""

    @abstractmethod
    def create_batch(self, proposal: BatchProposal) -> str:
        """Persist a batch and return its id."""

    @abstractmethod
    def assign_task_to_batch(self, task_id: str, batch_id: str) -> None:
        """Point one task at its batch."""

    def batch_unit(self):
        """
        Context manager grouping a batch creation with its member
        assignments. The default groups nothing: each write stands alone.
        """
        return nullcontext()


class InMemoryTaskRepository(TaskRepository):
    """
    Repository over a plain in-memory collection.

    Writes patch the stored records in place. ``batch_unit`` snapshots the
    state and restores it if a write inside the unit fails.
    """

    def __init__(self, tasks: Iterable[TaskRecord] = ()):
        self.tasks: Dict[str, TaskRecord] = {task.id: task for task in tasks}
        self.batches: Dict[str, Dict] = {}

    @classmethod
    def from_dicts(cls, raw_tasks: Iterable[Dict]) -> 'InMemoryTaskRepository':
        records, _ = parse_tasks(raw_tasks)
        return cls(records)

    def list_tasks(self) -> List[TaskRecord]:
        return [copy.deepcopy(task) for task in self.tasks.values()]

    def list_open_tasks(self) -> List[TaskRecord]:
        return [task for task in self.list_tasks() if task.is_open]

    def _get(self, operation: str, task_id: str) -> TaskRecord:
        try:
            return self.tasks[task_id]
        except KeyError:
            raise PersistenceFailure(operation, task_id, "task not found")

    def apply_priority(self, task_id: str, priority: Priority) -> None:
        self._get('apply_priority', task_id).priority = priority

    def create_batch(self, proposal: BatchProposal) -> str:
        batch_id = new_id()
        self.batches[batch_id] = {'id': batch_id, **proposal.to_dict()}
        return batch_id

    def assign_task_to_batch(self, task_id: str, batch_id: str) -> None:
        if batch_id not in self.batches:
            raise PersistenceFailure('assign_task_to_batch', task_id, f"batch {batch_id} not found")
        self._get('assign_task_to_batch', task_id).batch_id = batch_id

    @contextmanager
    def batch_unit(self):
        saved_tasks = copy.deepcopy(self.tasks)
        saved_batches = copy.deepcopy(self.batches)
        try:
            yield
        except PersistenceFailure:
            self.tasks = saved_tasks
            self.batches = saved_batches
            raise


class DjangoTaskRepository(TaskRepository):
    """Repository backed by the planner's Django models."""

    def __init__(self, queryset=None):
        self.queryset = queryset if queryset is not None else Task.objects.all()

    def _records(self, queryset) -> List[TaskRecord]:
        records, errors = parse_tasks(task.to_dict() for task in queryset)
        if errors:
            logger.warning("Skipped %d stored task(s) with invalid data", len(errors))
        return records

    def list_tasks(self) -> List[TaskRecord]:
        return self._records(self.queryset.all())

    def list_open_tasks(self) -> List[TaskRecord]:
        return self._records(self.queryset.exclude(status='completed'))

    def apply_priority(self, task_id: str, priority: Priority) -> None:
        try:
            updated = Task.objects.filter(pk=task_id).update(priority=priority.value)
        except DatabaseError as exc:
            raise PersistenceFailure('apply_priority', task_id, str(exc))
        if not updated:
            raise PersistenceFailure('apply_priority', task_id, "task not found")

    def create_batch(self, proposal: BatchProposal) -> str:
        try:
            batch = TaskBatch.objects.create(
                name=proposal.name,
                tasks=list(proposal.tasks),
                total_duration=proposal.total_duration,
                context=proposal.context,
                priority=proposal.priority.value,
            )
        except DatabaseError as exc:
            raise PersistenceFailure('create_batch', None, str(exc))
        return batch.id

    def assign_task_to_batch(self, task_id: str, batch_id: str) -> None:
        try:
            updated = Task.objects.filter(pk=task_id).update(batch_id=batch_id)
        except DatabaseError as exc:
            raise PersistenceFailure('assign_task_to_batch', task_id, str(exc))
        if not updated:
            raise PersistenceFailure('assign_task_to_batch', task_id, "task not found")

    def batch_unit(self):
        return transaction.atomic()
