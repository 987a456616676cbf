"""
Prioritization and auto-batching engine for the GTD planner.

This module holds the only real business logic of the planner: it scores
open tasks for priority promotion/demotion, groups similar unbatched tasks
into batches, and suggests likely dependencies from task titles.

Everything here is pure. Functions take a snapshot of task records and
return deltas; persisting those deltas is the job of a task repository
(see ``planner.repository``) driven by ``planner.services.PlannerService``.

Scoring Formula:
---------------
score = deadline_points + eisenhower_points + dependency_points + duration_points

- deadline_points:   40 / 30 / 20 / 10 / 0 by days until deadline
- eisenhower_points: 30 (urgent+important), 20 (urgent), 15 (important), 0
- dependency_points: min(dependents * 5, 20)
- duration_points:   10 (<= 15 min), 5 (<= 30 min), 0

Tier mapping: >= 70 urgent, >= 50 high, >= 30 medium, otherwise low.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


# ==================== Error Codes ====================

class ErrorCode(Enum):
    """Error codes shared by the engine and the API responses."""
    SUCCESS = "SUCCESS"
    ERR_MISSING_FIELD = "ERR_MISSING_FIELD"
    ERR_INVALID_DURATION = "ERR_INVALID_DURATION"
    ERR_INVALID_DATE = "ERR_INVALID_DATE"
    ERR_INVALID_PRIORITY = "ERR_INVALID_PRIORITY"
    ERR_INVALID_STATUS = "ERR_INVALID_STATUS"
    ERR_EMPTY_TASKS = "ERR_EMPTY_TASKS"
    ERR_UNKNOWN_TASK = "ERR_UNKNOWN_TASK"
    ERR_PERSISTENCE = "ERR_PERSISTENCE"


@dataclass
class ValidationError:
    """Structured validation error with code and details."""
    code: ErrorCode
    message: str
    field: Optional[str] = None
    task_id: Optional[str] = None

    def to_dict(self) -> Dict:
        result = {
            'error_code': self.code.value,
            'message': self.message
        }
        if self.field:
            result['field'] = self.field
        if self.task_id is not None:
            result['task_id'] = self.task_id
        return result


class InvalidTaskRecord(ValueError):
    """A task record that cannot take part in scoring or batching."""

    def __init__(self, error: ValidationError):
        super().__init__(error.message)
        self.error = error


# ==================== Enumerations ====================

class Priority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(Enum):
    """GTD status taxonomy."""
    INBOX = "inbox"
    NEXT_ACTION = "next-action"
    WAITING_FOR = "waiting-for"
    PROJECT = "project"
    SOMEDAY_MAYBE = "someday-maybe"
    COMPLETED = "completed"


class EisenhowerQuadrant(Enum):
    """Eisenhower Matrix quadrant classification."""
    DO_FIRST = "do_first"       # Urgent + Important
    SCHEDULE = "schedule"       # Important only
    DELEGATE = "delegate"       # Urgent only
    ELIMINATE = "eliminate"     # Neither


PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}

# Batches have no urgent tier
BATCH_PRIORITIES = (Priority.LOW, Priority.MEDIUM, Priority.HIGH)


# ==================== Records ====================

def parse_deadline(value) -> Optional[datetime]:
    """
    Normalize a deadline to a timezone-aware datetime.

    Accepts datetimes, dates (treated as midnight UTC) and ISO 8601 strings.
    Naive values are assumed to be UTC.
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    else:
        raise TypeError(f"Unsupported deadline type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class TaskRecord:
    """
    The engine's view of a task.

    Attributes:
        id: Unique task id
        estimated_duration: Expected duration in minutes
        title: Free text, used for dependency suggestions
        deadline: Optional timezone-aware deadline
        priority: Current priority tier
        status: GTD status
        urgent / important: Eisenhower flags
        context / category: Grouping keys for auto-batching
        dependencies: Ids of tasks this task depends on
        batch_id: Owning batch, if any
    """
    id: str
    estimated_duration: int
    title: str = ''
    deadline: Optional[datetime] = None
    priority: Priority = Priority.MEDIUM
    status: TaskStatus = TaskStatus.INBOX
    urgent: bool = False
    important: bool = False
    context: str = ''
    category: str = ''
    dependencies: Set[str] = field(default_factory=set)
    batch_id: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status != TaskStatus.COMPLETED

    @classmethod
    def from_dict(cls, data: Dict) -> 'TaskRecord':
        """
        Build a record from a plain mapping (API payload, ORM values).

        Raises:
            InvalidTaskRecord: when a required field is missing or a value
                cannot be interpreted.
        """
        task_id = data.get('id')
        if task_id is None or str(task_id).strip() == '':
            raise InvalidTaskRecord(ValidationError(
                code=ErrorCode.ERR_MISSING_FIELD,
                message="Task id is required",
                field='id'
            ))
        task_id = str(task_id)

        duration = data.get('estimated_duration')
        if duration is None:
            raise InvalidTaskRecord(ValidationError(
                code=ErrorCode.ERR_MISSING_FIELD,
                message="Estimated duration is required",
                field='estimated_duration',
                task_id=task_id
            ))
        try:
            duration = int(duration)
        except (TypeError, ValueError):
            duration = 0
        if duration < 1:
            raise InvalidTaskRecord(ValidationError(
                code=ErrorCode.ERR_INVALID_DURATION,
                message="Estimated duration must be a positive number of minutes",
                field='estimated_duration',
                task_id=task_id
            ))

        try:
            deadline = parse_deadline(data.get('deadline'))
        except (TypeError, ValueError):
            raise InvalidTaskRecord(ValidationError(
                code=ErrorCode.ERR_INVALID_DATE,
                message="Deadline must be an ISO 8601 date or datetime",
                field='deadline',
                task_id=task_id
            ))

        try:
            priority = Priority(data.get('priority') or Priority.MEDIUM.value)
        except ValueError:
            raise InvalidTaskRecord(ValidationError(
                code=ErrorCode.ERR_INVALID_PRIORITY,
                message=f"Unknown priority: {data.get('priority')}",
                field='priority',
                task_id=task_id
            ))

        try:
            status = TaskStatus(data.get('status') or TaskStatus.INBOX.value)
        except ValueError:
            raise InvalidTaskRecord(ValidationError(
                code=ErrorCode.ERR_INVALID_STATUS,
                message=f"Unknown status: {data.get('status')}",
                field='status',
                task_id=task_id
            ))

        batch_id = data.get('batch_id')
        return cls(
            id=task_id,
            estimated_duration=duration,
            title=data.get('title') or '',
            deadline=deadline,
            priority=priority,
            status=status,
            urgent=bool(data.get('urgent', False)),
            important=bool(data.get('important', False)),
            context=data.get('context') or '',
            category=data.get('category') or '',
            dependencies={str(d) for d in (data.get('dependencies') or [])},
            batch_id=str(batch_id) if batch_id else None,
        )

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'title': self.title,
            'deadline': self.deadline.isoformat() if self.deadline else None,
            'estimated_duration': self.estimated_duration,
            'priority': self.priority.value,
            'status': self.status.value,
            'urgent': self.urgent,
            'important': self.important,
            'context': self.context,
            'category': self.category,
            'dependencies': sorted(self.dependencies),
            'batch_id': self.batch_id,
        }


def parse_tasks(raw_tasks: Iterable[Dict]) -> Tuple[List[TaskRecord], List[ValidationError]]:
    """
    Convert raw task mappings to records, skipping the invalid ones.

    Returns:
        Tuple of (valid records in input order, validation errors)
    """
    records = []
    errors = []
    for raw in raw_tasks:
        try:
            records.append(TaskRecord.from_dict(raw))
        except InvalidTaskRecord as exc:
            logger.warning("Skipping invalid task record: %s", exc.error.message)
            errors.append(exc.error)
    return records, errors


def check_record(task: TaskRecord) -> Optional[ValidationError]:
    """Return the reason a record must be skipped, or None if it is usable."""
    if not task.id:
        return ValidationError(
            code=ErrorCode.ERR_MISSING_FIELD,
            message="Task id is required",
            field='id'
        )
    if task.estimated_duration is None:
        return ValidationError(
            code=ErrorCode.ERR_MISSING_FIELD,
            message="Estimated duration is required",
            field='estimated_duration',
            task_id=task.id
        )
    if task.estimated_duration < 1:
        return ValidationError(
            code=ErrorCode.ERR_INVALID_DURATION,
            message="Estimated duration must be a positive number of minutes",
            field='estimated_duration',
            task_id=task.id
        )
    try:
        parse_deadline(task.deadline)
    except (TypeError, ValueError):
        return ValidationError(
            code=ErrorCode.ERR_INVALID_DATE,
            message="Deadline must be an ISO 8601 date or datetime",
            field='deadline',
            task_id=task.id
        )
    return None


# ==================== Results ====================

@dataclass
class ScoreBreakdown:
    """Detailed breakdown of how a task's score was calculated."""
    task_id: str
    deadline_points: int = 0
    eisenhower_points: int = 0
    dependency_points: int = 0
    duration_points: int = 0
    days_until_deadline: Optional[int] = None
    dependents_count: int = 0
    priority: Priority = Priority.LOW
    explanation: str = ""

    @property
    def total(self) -> int:
        return (
            self.deadline_points +
            self.eisenhower_points +
            self.dependency_points +
            self.duration_points
        )

    def to_dict(self) -> Dict:
        return {
            'task_id': self.task_id,
            'score': self.total,
            'priority': self.priority.value,
            'factors': {
                'deadline': self.deadline_points,
                'eisenhower': self.eisenhower_points,
                'dependencies': self.dependency_points,
                'duration': self.duration_points,
            },
            'days_until_deadline': self.days_until_deadline,
            'dependents_count': self.dependents_count,
            'explanation': self.explanation,
        }


@dataclass
class PriorityChange:
    """A task whose computed tier differs from its stored priority."""
    task_id: str
    old_priority: Priority
    new_priority: Priority
    score: int

    def to_dict(self) -> Dict:
        return {
            'task_id': self.task_id,
            'old_priority': self.old_priority.value,
            'new_priority': self.new_priority.value,
            'score': self.score,
        }


@dataclass
class BatchProposal:
    """A new batch the engine wants created. Ids are assigned on persist."""
    name: str
    tasks: List[str]
    total_duration: int
    context: str
    priority: Priority

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'tasks': list(self.tasks),
            'total_duration': self.total_duration,
            'context': self.context,
            'priority': self.priority.value,
        }


# ==================== Engine ====================

def score_to_priority(score: int) -> Priority:
    """Map a numeric score to a priority tier."""
    if score >= 70:
        return Priority.URGENT
    if score >= 50:
        return Priority.HIGH
    if score >= 30:
        return Priority.MEDIUM
    return Priority.LOW


def batch_priority(priorities: Iterable[Priority]) -> Priority:
    """Highest member priority, with urgent capped at high."""
    highest = max(priorities, key=PRIORITY_RANK.get, default=Priority.LOW)
    if highest not in BATCH_PRIORITIES:
        return BATCH_PRIORITIES[-1]
    return highest


def count_dependents(tasks: Iterable[TaskRecord]) -> Dict[str, int]:
    """Count, per task id, how many tasks list it as a dependency."""
    counts: Dict[str, int] = {}
    for task in tasks:
        for dependency_id in task.dependencies:
            counts[dependency_id] = counts.get(dependency_id, 0) + 1
    return counts


class PriorityBatchEngine:
    """
    Scores open tasks and proposes batches of similar tasks.

    The engine holds no state between calls. Inputs are treated as an
    immutable snapshot; nothing here performs I/O.
    """

    SECONDS_PER_DAY = 86400

    # (max days, points), evaluated in order
    DEADLINE_BUCKETS = (
        (1, 40),
        (3, 30),
        (7, 20),
        (14, 10),
    )

    MAX_DEPENDENCY_POINTS = 20
    POINTS_PER_DEPENDENT = 5

    def days_until(self, deadline: datetime, now: datetime) -> int:
        """Whole days until the deadline, rounded up. Negative when past due."""
        seconds = (deadline - now).total_seconds()
        return math.ceil(seconds / self.SECONDS_PER_DAY)

    def deadline_points(self, days: Optional[int]) -> int:
        if days is None:
            return 0
        for max_days, points in self.DEADLINE_BUCKETS:
            if days <= max_days:
                return points
        return 0

    def eisenhower_points(self, urgent: bool, important: bool) -> int:
        if urgent and important:
            return 30
        if urgent:
            return 20
        if important:
            return 15
        return 0

    def dependency_points(self, dependents: int) -> int:
        return min(dependents * self.POINTS_PER_DEPENDENT, self.MAX_DEPENDENCY_POINTS)

    def duration_points(self, estimated_duration: int) -> int:
        if estimated_duration <= 15:
            return 10
        if estimated_duration <= 30:
            return 5
        return 0

    def score_task(
        self,
        task: TaskRecord,
        dependents: Dict[str, int],
        now: datetime
    ) -> ScoreBreakdown:
        """
        Score a single task.

        Args:
            task: The task to score
            dependents: Dependent counts for the whole collection
                (see ``count_dependents``)
            now: Reference time for deadline proximity
        """
        deadline = parse_deadline(task.deadline)
        days = self.days_until(deadline, parse_deadline(now)) if deadline else None
        dependents_count = dependents.get(task.id, 0)

        breakdown = ScoreBreakdown(
            task_id=task.id,
            deadline_points=self.deadline_points(days),
            eisenhower_points=self.eisenhower_points(task.urgent, task.important),
            dependency_points=self.dependency_points(dependents_count),
            duration_points=self.duration_points(task.estimated_duration),
            days_until_deadline=days,
            dependents_count=dependents_count,
        )
        breakdown.priority = score_to_priority(breakdown.total)
        breakdown.explanation = self._explain(task, breakdown)
        return breakdown

    def _explain(self, task: TaskRecord, breakdown: ScoreBreakdown) -> str:
        """Human-readable summary of the factors behind a score."""
        parts = []

        days = breakdown.days_until_deadline
        if days is None:
            parts.append("No deadline")
        elif days < 0:
            parts.append(f"Overdue by {abs(days)} day(s)")
        elif days <= 1:
            parts.append("Due within a day")
        else:
            parts.append(f"Due in {days} days")

        if task.urgent and task.important:
            parts.append("Urgent and important")
        elif task.urgent:
            parts.append("Urgent")
        elif task.important:
            parts.append("Important")

        if breakdown.dependents_count:
            parts.append(f"Blocks {breakdown.dependents_count} task(s)")

        if breakdown.duration_points:
            parts.append(f"Quick task ({task.estimated_duration} min)")

        parts.append(f"Score: {breakdown.total} ({breakdown.priority.value})")
        return " | ".join(parts)

    def _usable(self, tasks: Iterable[TaskRecord]) -> List[TaskRecord]:
        usable = []
        for task in tasks:
            error = check_record(task)
            if error is not None:
                logger.warning("Skipping task %s: %s", task.id, error.message)
                continue
            usable.append(task)
        return usable

    def score_tasks(
        self,
        tasks: List[TaskRecord],
        now: Optional[datetime] = None
    ) -> List[ScoreBreakdown]:
        """Score every open, valid task in the collection, in input order."""
        if now is None:
            now = datetime.now(timezone.utc)
        now = parse_deadline(now)
        tasks = self._usable(tasks)
        dependents = count_dependents(tasks)
        return [
            self.score_task(task, dependents, now)
            for task in tasks
            if task.is_open
        ]

    def prioritize(
        self,
        tasks: List[TaskRecord],
        now: Optional[datetime] = None
    ) -> List[PriorityChange]:
        """
        Compute new priorities for open tasks.

        Only tasks whose computed tier differs from their current priority
        are returned, so applying the result and calling again yields
        nothing.
        """
        by_id = {task.id: task for task in tasks}
        changes = []
        for breakdown in self.score_tasks(tasks, now):
            current = by_id[breakdown.task_id].priority
            if breakdown.priority != current:
                changes.append(PriorityChange(
                    task_id=breakdown.task_id,
                    old_priority=current,
                    new_priority=breakdown.priority,
                    score=breakdown.total,
                ))
        return changes

    def auto_batch(self, tasks: List[TaskRecord]) -> List[BatchProposal]:
        """
        Group open, unbatched tasks by exact (context, category).

        Every group with two or more members becomes a proposal. Tasks that
        already carry a batch_id are skipped, so callers must assign members
        before running again or the same tasks will be proposed twice.
        """
        groups: Dict[Tuple[str, str], List[TaskRecord]] = {}
        for task in self._usable(tasks):
            if task.batch_id or not task.is_open:
                continue
            key = (task.context or '', task.category or '')
            groups.setdefault(key, []).append(task)

        proposals = []
        for (context, category), members in groups.items():
            if len(members) < 2:
                continue
            first = members[0]
            proposals.append(BatchProposal(
                name=f"{first.context} - {first.category}",
                tasks=[member.id for member in members],
                total_duration=sum(member.estimated_duration for member in members),
                context=context,
                priority=batch_priority(member.priority for member in members),
            ))
        return proposals


# ==================== Dependency Suggestions ====================

# trigger phrase -> phrases of likely prerequisite tasks
DEPENDENCY_RULES: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ('client meeting', ('prepare presentation', 'prepare agenda')),
    ('deploy', ('run tests', 'code review')),
    ('launch', ('marketing plan', 'final review')),
    ('contract', ('legal review', 'get approval')),
    ('report', ('gather data', 'analysis')),
    ('presentation', ('create slides', 'research')),
)


class DependencySuggester:
    """
    Suggests dependencies by matching title phrases.

    Matching is case-insensitive substring search, so "subcontract" triggers
    the "contract" rule. Duplicate ids can come out when several rules or
    phrases hit the same task; pass ``dedupe=True`` to collapse them.
    """

    def __init__(self, rules=DEPENDENCY_RULES, dedupe: bool = False):
        self.rules = rules
        self.dedupe = dedupe

    def suggest(
        self,
        task_id: str,
        tasks: List[TaskRecord],
        dedupe: Optional[bool] = None
    ) -> List[str]:
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            return []
        if dedupe is None:
            dedupe = self.dedupe

        title = task.title.lower()
        others = [t for t in tasks if t.id != task_id]
        suggestions = []
        for trigger, phrases in self.rules:
            if trigger not in title:
                continue
            for phrase in phrases:
                match = next(
                    (t for t in others if phrase in t.title.lower()),
                    None
                )
                if match is None:
                    continue
                if dedupe and match.id in suggestions:
                    continue
                suggestions.append(match.id)
        return suggestions


# ==================== Views over the collection ====================

def classify_eisenhower(task: TaskRecord) -> EisenhowerQuadrant:
    if task.urgent and task.important:
        return EisenhowerQuadrant.DO_FIRST
    if task.important:
        return EisenhowerQuadrant.SCHEDULE
    if task.urgent:
        return EisenhowerQuadrant.DELEGATE
    return EisenhowerQuadrant.ELIMINATE


def eisenhower_matrix(tasks: Iterable[TaskRecord]) -> Dict[EisenhowerQuadrant, List[TaskRecord]]:
    """Group open tasks by Eisenhower quadrant, keeping collection order."""
    matrix: Dict[EisenhowerQuadrant, List[TaskRecord]] = {
        quadrant: [] for quadrant in EisenhowerQuadrant
    }
    for task in tasks:
        if task.is_open:
            matrix[classify_eisenhower(task)].append(task)
    return matrix


def batch_progress(batch_task_ids: Iterable[str], tasks: Iterable[TaskRecord]) -> float:
    """Percentage of a batch's tasks that are completed (0 if none are known)."""
    member_ids = set(batch_task_ids)
    members = [task for task in tasks if task.id in member_ids]
    if not members:
        return 0.0
    completed = sum(1 for task in members if not task.is_open)
    return completed / len(members) * 100
