"""
API Views for the GTD planner.

Compute endpoints take tasks in the request body and return the engine's
deltas without touching the database. The ``apply`` endpoints run the
planner service against stored tasks and persist the deltas.
"""

import logging
from typing import Dict, List, Tuple

from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import extend_schema
from rest_framework import status
from rest_framework.decorators import api_view, throttle_classes
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import AnonRateThrottle

from .conf import get_planner_settings
from .engine import (
    DEPENDENCY_RULES,
    DependencySuggester,
    ErrorCode,
    PriorityBatchEngine,
    TaskRecord,
    ValidationError,
    batch_progress,
    eisenhower_matrix,
)
from .models import TaskBatch
from .repository import DjangoTaskRepository
from .serializers import (
    AutoBatchApplySerializer,
    SuggestDependenciesSerializer,
    TaskBulkInputSerializer,
    TaskInputSerializer,
)
from .services import PlannerService

logger = logging.getLogger(__name__)


# ============================================
# RATE LIMITING CLASSES
# ============================================

class PlannerRateThrottle(AnonRateThrottle):
    """Anonymous throttle whose rate comes from the PLANNER settings."""
    rate_setting = 'PRIORITIZE_RATE'

    def get_rate(self):
        return get_planner_settings()[self.rate_setting]


class PrioritizeRateThrottle(PlannerRateThrottle):
    scope = 'prioritize'
    rate_setting = 'PRIORITIZE_RATE'


class BatchRateThrottle(PlannerRateThrottle):
    scope = 'batch'
    rate_setting = 'BATCH_RATE'


# ============================================
# HELPERS
# ============================================

FIELD_ERROR_CODES = {
    'estimated_duration': ErrorCode.ERR_INVALID_DURATION,
    'deadline': ErrorCode.ERR_INVALID_DATE,
    'priority': ErrorCode.ERR_INVALID_PRIORITY,
    'status': ErrorCode.ERR_INVALID_STATUS,
}


def collect_records(raw_tasks: List[Dict]) -> Tuple[List[TaskRecord], List[ValidationError]]:
    """
    Validate submitted tasks one by one.

    Invalid tasks are skipped and reported as warnings rather than failing
    the request.
    """
    records = []
    warnings = []
    for raw in raw_tasks:
        serializer = TaskInputSerializer(data=raw)
        if not serializer.is_valid():
            task_id = raw.get('id')
            task_id = str(task_id) if task_id is not None else None
            for field_name, messages in serializer.errors.items():
                missing = any(getattr(m, 'code', None) == 'required' for m in messages)
                code = ErrorCode.ERR_MISSING_FIELD if missing else FIELD_ERROR_CODES.get(
                    field_name, ErrorCode.ERR_MISSING_FIELD
                )
                warnings.append(ValidationError(
                    code=code,
                    message=str(messages[0]),
                    field=field_name,
                    task_id=task_id
                ))
            logger.warning("Skipping invalid task %s: %s", task_id, dict(serializer.errors))
            continue
        records.append(TaskRecord.from_dict(serializer.validated_data))
    return records, warnings


def invalid_input_response(errors) -> Response:
    return Response(
        {
            'success': False,
            'error_code': ErrorCode.ERR_EMPTY_TASKS.value if 'tasks' in errors else ErrorCode.ERR_MISSING_FIELD.value,
            'errors': errors,
            'message': 'Invalid input data. Please check your tasks format.'
        },
        status=status.HTTP_400_BAD_REQUEST
    )


def no_valid_tasks_response(warnings: List[ValidationError]) -> Response:
    return Response(
        {
            'success': False,
            'error_code': ErrorCode.ERR_EMPTY_TASKS.value,
            'message': 'All provided tasks were invalid. Please check the format.',
            'warnings': [w.to_dict() for w in warnings],
        },
        status=status.HTTP_400_BAD_REQUEST
    )


def build_service() -> PlannerService:
    config = get_planner_settings()
    return PlannerService(
        DjangoTaskRepository(),
        suggester=DependencySuggester(dedupe=config['DEDUPE_SUGGESTIONS']),
        atomic_batching=config['ATOMIC_BATCHING'],
    )


def batch_stats(batches: List[Dict]) -> Dict:
    """Totals across listed batches. A batch counts as completed at 100% progress."""
    count = len(batches)
    return {
        'total_batches': count,
        'completed_batches': sum(1 for batch in batches if batch['progress'] >= 100),
        'total_tasks': sum(len(batch['tasks']) for batch in batches),
        'average_progress': round(sum(batch['progress'] for batch in batches) / count, 2) if count else 0.0,
    }


# ============================================
# COMPUTE ENDPOINTS
# ============================================

@extend_schema(
    summary="Compute new priorities",
    description="""
    Score the submitted open tasks and return the ones whose computed
    priority differs from their current priority, with a score breakdown
    for every scored task.
    """,
    request=TaskBulkInputSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Prioritization']
)
@api_view(['POST'])
@throttle_classes([PrioritizeRateThrottle])
def prioritize_tasks(request: Request) -> Response:
    """
    POST /api/tasks/prioritize/

    Request Body:
    {
        "tasks": [...],
        "now": "2025-01-01T09:00:00Z"      // Optional reference time
    }
    """
    serializer = TaskBulkInputSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    records, warnings = collect_records(serializer.validated_data['tasks'])
    if not records:
        return no_valid_tasks_response(warnings)

    now = serializer.validated_data.get('now')
    engine = PriorityBatchEngine()
    scores = engine.score_tasks(records, now)
    changes = engine.prioritize(records, now)

    tiers = {'low': 0, 'medium': 0, 'high': 0, 'urgent': 0}
    for breakdown in scores:
        tiers[breakdown.priority.value] += 1

    return Response({
        'success': True,
        'error_code': ErrorCode.SUCCESS.value,
        'count': len(changes),
        'changes': [change.to_dict() for change in changes],
        'scores': [breakdown.to_dict() for breakdown in scores],
        'summary': {
            'scored_tasks': len(scores),
            'changed_tasks': len(changes),
            'tiers': tiers,
        },
        'warnings': [w.to_dict() for w in warnings],
    })


@extend_schema(
    summary="Propose task batches",
    description="Group open, unbatched tasks sharing context and category.",
    request=TaskBulkInputSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Batching']
)
@api_view(['POST'])
@throttle_classes([BatchRateThrottle])
def auto_batch_tasks(request: Request) -> Response:
    """
    POST /api/tasks/auto-batch/
    """
    serializer = TaskBulkInputSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    records, warnings = collect_records(serializer.validated_data['tasks'])
    if not records:
        return no_valid_tasks_response(warnings)

    proposals = PriorityBatchEngine().auto_batch(records)
    batched = {task_id for proposal in proposals for task_id in proposal.tasks}
    unbatched = [
        task.id for task in records
        if task.is_open and not task.batch_id and task.id not in batched
    ]

    return Response({
        'success': True,
        'error_code': ErrorCode.SUCCESS.value,
        'count': len(proposals),
        'batches': [proposal.to_dict() for proposal in proposals],
        'unbatched': unbatched,
        'warnings': [w.to_dict() for w in warnings],
    })


@extend_schema(
    summary="Suggest dependencies",
    description="Suggest prerequisite tasks from title trigger phrases.",
    request=SuggestDependenciesSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Utilities']
)
@api_view(['POST'])
def suggest_dependencies(request: Request) -> Response:
    """
    POST /api/tasks/suggest-dependencies/

    Request Body:
    {
        "task_id": "...",
        "tasks": [...],
        "dedupe": false                     // Optional, defaults to settings
    }
    """
    serializer = SuggestDependenciesSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    records, warnings = collect_records(serializer.validated_data['tasks'])
    task_id = serializer.validated_data['task_id']
    if not any(task.id == task_id for task in records):
        return Response(
            {
                'success': False,
                'error_code': ErrorCode.ERR_UNKNOWN_TASK.value,
                'message': f"Task {task_id} is not among the submitted tasks",
                'warnings': [w.to_dict() for w in warnings],
            },
            status=status.HTTP_404_NOT_FOUND
        )

    dedupe = serializer.validated_data.get('dedupe')
    if dedupe is None:
        dedupe = get_planner_settings()['DEDUPE_SUGGESTIONS']
    suggestions = DependencySuggester().suggest(task_id, records, dedupe=dedupe)

    return Response({
        'success': True,
        'error_code': ErrorCode.SUCCESS.value,
        'task_id': task_id,
        'deduplicated': dedupe,
        'suggestions': suggestions,
        'warnings': [w.to_dict() for w in warnings],
    })


@extend_schema(
    summary="Eisenhower matrix",
    description="Group the submitted open tasks into Eisenhower quadrants.",
    request=TaskBulkInputSerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Utilities']
)
@api_view(['POST'])
def matrix(request: Request) -> Response:
    """
    POST /api/tasks/matrix/
    """
    serializer = TaskBulkInputSerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    records, warnings = collect_records(serializer.validated_data['tasks'])
    quadrants = eisenhower_matrix(records)

    return Response({
        'success': True,
        'error_code': ErrorCode.SUCCESS.value,
        'quadrants': {
            quadrant.value: [task.id for task in tasks]
            for quadrant, tasks in quadrants.items()
        },
        'warnings': [w.to_dict() for w in warnings],
    })


# ============================================
# PERSISTING ENDPOINTS
# ============================================

@extend_schema(
    summary="Reprioritize stored tasks",
    description="Recompute and store priorities for every open task in the database.",
    request=None,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Prioritization']
)
@api_view(['POST'])
@throttle_classes([PrioritizeRateThrottle])
def apply_prioritization(request: Request) -> Response:
    """
    POST /api/tasks/prioritize/apply/
    """
    report = build_service().reprioritize()
    return Response({
        'success': report.succeeded,
        'error_code': ErrorCode.SUCCESS.value if report.succeeded else ErrorCode.ERR_PERSISTENCE.value,
        **report.to_dict(),
    })


@extend_schema(
    summary="Auto-batch stored tasks",
    description="""
    Create batches for similar open tasks in the database and link their
    members. With "atomic" each batch and its member links are written in
    one transaction.
    """,
    request=AutoBatchApplySerializer,
    responses={200: OpenApiTypes.OBJECT},
    tags=['Batching']
)
@api_view(['POST'])
@throttle_classes([BatchRateThrottle])
def apply_auto_batch(request: Request) -> Response:
    """
    POST /api/tasks/auto-batch/apply/
    """
    serializer = AutoBatchApplySerializer(data=request.data)
    if not serializer.is_valid():
        return invalid_input_response(serializer.errors)

    report = build_service().auto_batch(atomic=serializer.validated_data.get('atomic'))
    return Response({
        'success': report.succeeded,
        'error_code': ErrorCode.SUCCESS.value if report.succeeded else ErrorCode.ERR_PERSISTENCE.value,
        **report.to_dict(),
    })


@extend_schema(
    summary="List batches",
    description="List stored batches with their completion progress.",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Batching']
)
@api_view(['GET'])
def list_batches(request: Request) -> Response:
    """
    GET /api/batches/
    """
    tasks = DjangoTaskRepository().list_tasks()
    batches = [
        {
            'id': batch.id,
            'name': batch.name,
            'tasks': batch.tasks,
            'total_duration': batch.total_duration,
            'context': batch.context,
            'priority': batch.priority,
            'scheduled': batch.scheduled.isoformat() if batch.scheduled else None,
            'progress': round(batch_progress(batch.tasks, tasks), 2),
        }
        for batch in TaskBatch.objects.all()
    ]
    return Response({
        'success': True,
        'count': len(batches),
        'batches': batches,
        'stats': batch_stats(batches),
    })


@extend_schema(
    summary="API information",
    description="Get API information and available endpoints.",
    responses={200: OpenApiTypes.OBJECT},
    tags=['Info']
)
@api_view(['GET'])
def api_info(request: Request) -> Response:
    """
    GET /api/
    """
    return Response({
        'name': 'GTD Planner API',
        'version': '1.0.0',
        'documentation': '/api/docs/',
        'endpoints': {
            'POST /api/tasks/prioritize/': 'Compute priority changes for submitted tasks',
            'POST /api/tasks/auto-batch/': 'Propose batches for submitted tasks',
            'POST /api/tasks/suggest-dependencies/': 'Suggest dependencies from task titles',
            'POST /api/tasks/matrix/': 'Group submitted tasks into Eisenhower quadrants',
            'POST /api/tasks/prioritize/apply/': 'Reprioritize stored tasks',
            'POST /api/tasks/auto-batch/apply/': 'Auto-batch stored tasks',
            'GET /api/batches/': 'List stored batches with progress',
            'GET /api/docs/': 'Interactive API documentation',
            'GET /api/schema/': 'OpenAPI schema',
            'GET /api/': 'This info endpoint'
        },
        'dependency_rules': {
            trigger: list(phrases) for trigger, phrases in DEPENDENCY_RULES
        },
        'error_codes': {
            code.value: code.name for code in ErrorCode
        }
    })
