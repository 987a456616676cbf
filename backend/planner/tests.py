"""
Unit Tests for the GTD planner.

This module covers the scoring and batching engine, dependency suggestions,
the planner service over both repositories, and the API endpoints.
"""

import json
from datetime import datetime, timedelta, timezone
from unittest import mock

from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone as django_timezone
from rest_framework import status
from rest_framework.test import APITestCase

from .engine import (
    DependencySuggester,
    EisenhowerQuadrant,
    ErrorCode,
    InvalidTaskRecord,
    Priority,
    PriorityBatchEngine,
    TaskRecord,
    TaskStatus,
    batch_priority,
    batch_progress,
    count_dependents,
    eisenhower_matrix,
    parse_tasks,
    score_to_priority,
)
from .models import Task, TaskBatch
from .repository import DjangoTaskRepository, InMemoryTaskRepository, PersistenceFailure
from .services import PlannerService

NOW = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)


def make_task(task_id, **fields):
    fields.setdefault('estimated_duration', 60)
    fields.setdefault('priority', Priority.LOW)
    return TaskRecord(id=task_id, **fields)


class FailingRepository(InMemoryTaskRepository):
    """In-memory repository that fails writes for chosen ids."""

    def __init__(self, tasks, fail_priority=(), fail_assign=(), fail_batches=()):
        super().__init__(tasks)
        self.fail_priority = set(fail_priority)
        self.fail_assign = set(fail_assign)
        self.fail_batches = set(fail_batches)

    def apply_priority(self, task_id, priority):
        if task_id in self.fail_priority:
            raise PersistenceFailure('apply_priority', task_id, 'simulated outage')
        super().apply_priority(task_id, priority)

    def create_batch(self, proposal):
        if proposal.name in self.fail_batches:
            raise PersistenceFailure('create_batch', None, 'simulated outage')
        return super().create_batch(proposal)

    def assign_task_to_batch(self, task_id, batch_id):
        if task_id in self.fail_assign:
            raise PersistenceFailure('assign_task_to_batch', task_id, 'simulated outage')
        super().assign_task_to_batch(task_id, batch_id)


class ScoringTests(TestCase):
    """Tests for the individual scoring factors and the total score."""

    def setUp(self):
        self.engine = PriorityBatchEngine()

    def score(self, task, tasks=None):
        tasks = tasks if tasks is not None else [task]
        return self.engine.score_task(task, count_dependents(tasks), NOW)

    def test_plain_task_scores_zero(self):
        """No deadline, no flags, no dependents and 60 minutes scores 0 (low)."""
        breakdown = self.score(make_task('t'))

        self.assertEqual(breakdown.total, 0)
        self.assertEqual(breakdown.priority, Priority.LOW)
        self.assertIsNone(breakdown.days_until_deadline)

    def test_due_soon_urgent_important_quick_task(self):
        """Due in 12 hours, urgent and important, 10 minutes: 40 + 30 + 0 + 10."""
        task = make_task(
            't',
            deadline=NOW + timedelta(hours=12),
            urgent=True,
            important=True,
            estimated_duration=10,
        )
        breakdown = self.score(task)

        self.assertEqual(breakdown.deadline_points, 40)
        self.assertEqual(breakdown.eisenhower_points, 30)
        self.assertEqual(breakdown.duration_points, 10)
        self.assertEqual(breakdown.total, 80)
        self.assertEqual(breakdown.priority, Priority.URGENT)

    def test_important_task_with_dependents(self):
        """Due in 10 days, important, 3 dependents, 20 minutes: 10 + 15 + 15 + 5."""
        task = make_task(
            't',
            deadline=NOW + timedelta(days=10),
            important=True,
            estimated_duration=20,
        )
        dependents = [make_task(f'd{i}', dependencies={'t'}) for i in range(3)]
        breakdown = self.score(task, [task] + dependents)

        self.assertEqual(breakdown.dependents_count, 3)
        self.assertEqual(breakdown.total, 45)
        self.assertEqual(breakdown.priority, Priority.MEDIUM)

    def test_deadline_buckets(self):
        """Days until deadline are rounded up before bucketing."""
        cases = [
            (timedelta(hours=1), 40),
            (timedelta(days=1), 40),
            (timedelta(days=1, minutes=1), 30),
            (timedelta(days=3), 30),
            (timedelta(days=3, hours=1), 20),
            (timedelta(days=7), 20),
            (timedelta(days=14), 10),
            (timedelta(days=14, seconds=1), 0),
            (timedelta(days=30), 0),
        ]
        for offset, expected in cases:
            with self.subTest(offset=offset):
                breakdown = self.score(make_task('t', deadline=NOW + offset))
                self.assertEqual(breakdown.deadline_points, expected)

    def test_past_due_gets_nearest_bucket(self):
        """Overdue tasks land in the first bucket with no extra bonus."""
        breakdown = self.score(make_task('t', deadline=NOW - timedelta(days=5)))

        self.assertEqual(breakdown.days_until_deadline, -5)
        self.assertEqual(breakdown.deadline_points, 40)

    def test_eisenhower_factor_is_exclusive(self):
        self.assertEqual(self.score(make_task('t', urgent=True)).eisenhower_points, 20)
        self.assertEqual(self.score(make_task('t', important=True)).eisenhower_points, 15)
        self.assertEqual(
            self.score(make_task('t', urgent=True, important=True)).eisenhower_points,
            30
        )

    def test_dependency_points_capped(self):
        """Six dependents would be 30 points but the factor caps at 20."""
        task = make_task('t')
        dependents = [make_task(f'd{i}', dependencies={'t'}) for i in range(6)]
        breakdown = self.score(task, [task] + dependents)

        self.assertEqual(breakdown.dependents_count, 6)
        self.assertEqual(breakdown.dependency_points, 20)

    def test_duration_points(self):
        cases = [(5, 10), (15, 10), (16, 5), (30, 5), (31, 0), (240, 0)]
        for minutes, expected in cases:
            with self.subTest(minutes=minutes):
                breakdown = self.score(make_task('t', estimated_duration=minutes))
                self.assertEqual(breakdown.duration_points, expected)

    def test_tier_thresholds(self):
        self.assertEqual(score_to_priority(100), Priority.URGENT)
        self.assertEqual(score_to_priority(70), Priority.URGENT)
        self.assertEqual(score_to_priority(69), Priority.HIGH)
        self.assertEqual(score_to_priority(50), Priority.HIGH)
        self.assertEqual(score_to_priority(49), Priority.MEDIUM)
        self.assertEqual(score_to_priority(30), Priority.MEDIUM)
        self.assertEqual(score_to_priority(29), Priority.LOW)
        self.assertEqual(score_to_priority(0), Priority.LOW)

    def test_explanation_mentions_factors(self):
        task = make_task(
            't',
            deadline=NOW + timedelta(hours=12),
            urgent=True,
            important=True,
            estimated_duration=10,
        )
        explanation = self.score(task).explanation

        self.assertIn("Due within a day", explanation)
        self.assertIn("Urgent and important", explanation)
        self.assertIn("Score: 80 (urgent)", explanation)


class PrioritizeTests(TestCase):
    """Tests for the prioritize delta computation."""

    def setUp(self):
        self.engine = PriorityBatchEngine()

    def test_completed_tasks_are_never_reprioritized(self):
        done = make_task(
            'done',
            status=TaskStatus.COMPLETED,
            deadline=NOW,
            urgent=True,
            important=True,
            estimated_duration=5,
        )
        changes = self.engine.prioritize([done], NOW)

        self.assertEqual(changes, [])

    def test_unchanged_priorities_are_omitted(self):
        changes = self.engine.prioritize([make_task('t', priority=Priority.LOW)], NOW)
        self.assertEqual(changes, [])

    def test_change_reports_old_and_new_priority(self):
        task = make_task(
            't',
            priority=Priority.MEDIUM,
            deadline=NOW + timedelta(hours=12),
            urgent=True,
            important=True,
            estimated_duration=10,
        )
        changes = self.engine.prioritize([task], NOW)

        self.assertEqual(len(changes), 1)
        self.assertEqual(changes[0].task_id, 't')
        self.assertEqual(changes[0].old_priority, Priority.MEDIUM)
        self.assertEqual(changes[0].new_priority, Priority.URGENT)
        self.assertEqual(changes[0].score, 80)

    def test_demotion_is_reported(self):
        changes = self.engine.prioritize([make_task('t', priority=Priority.URGENT)], NOW)

        self.assertEqual(changes[0].new_priority, Priority.LOW)

    def test_second_run_after_applying_is_empty(self):
        """Applying the deltas and running again yields no further deltas."""
        tasks = [
            make_task('a', deadline=NOW + timedelta(days=2), important=True),
            make_task('b', urgent=True, estimated_duration=10, dependencies={'a'}),
            make_task('c', priority=Priority.URGENT),
        ]
        first = self.engine.prioritize(tasks, NOW)
        self.assertTrue(first)

        by_id = {task.id: task for task in tasks}
        for change in first:
            by_id[change.task_id].priority = change.new_priority

        self.assertEqual(self.engine.prioritize(tasks, NOW), [])

    def test_invalid_records_are_skipped_with_warning(self):
        broken = make_task('broken', estimated_duration=0, priority=Priority.URGENT)
        valid = make_task('ok', priority=Priority.URGENT)

        with self.assertLogs('planner.engine', level='WARNING') as logs:
            changes = self.engine.prioritize([broken, valid], NOW)

        self.assertEqual([c.task_id for c in changes], ['ok'])
        self.assertIn('broken', logs.output[0])
    def test_naive_deadline_is_read_as_utc(self):
        task = make_task(
            't',
            deadline=datetime(2025, 6, 3, 9, 0),
            urgent=True,
            important=True,
            estimated_duration=10,
        )
        changes = self.engine.prioritize([task], NOW)

        self.assertEqual(changes[0].new_priority, Priority.URGENT)
        self.assertEqual(changes[0].score, 80)

    def test_naive_now_is_read_as_utc(self):
        task = make_task('t', deadline=NOW + timedelta(hours=12), urgent=True, important=True)
        breakdown = self.engine.score_tasks([task], datetime(2025, 6, 2, 9, 0))[0]

        self.assertEqual(breakdown.days_until_deadline, 1)
        self.assertEqual(breakdown.deadline_points, 40)

    def test_unreadable_deadline_skips_record(self):
        broken = make_task('broken', deadline='next tuesday', priority=Priority.URGENT)
        odd = make_task('odd', deadline=42, priority=Priority.URGENT)
        valid = make_task('ok', priority=Priority.URGENT)

        with self.assertLogs('planner.engine', level='WARNING') as logs:
            changes = self.engine.prioritize([broken, odd, valid], NOW)

        self.assertEqual([c.task_id for c in changes], ['ok'])
        self.assertEqual(len(logs.output), 2)


class AutoBatchTests(TestCase):
    """Tests for grouping similar tasks into batches."""

    def setUp(self):
        self.engine = PriorityBatchEngine()

    def test_matching_pair_forms_one_batch(self):
        tasks = [
            make_task('call-1', context='@office', category='calls', estimated_duration=10),
            make_task('call-2', context='@office', category='calls', estimated_duration=25),
            make_task('errand', context='@town', category='errands'),
        ]
        proposals = self.engine.auto_batch(tasks)

        self.assertEqual(len(proposals), 1)
        self.assertEqual(proposals[0].tasks, ['call-1', 'call-2'])
        self.assertEqual(proposals[0].total_duration, 35)
        self.assertEqual(proposals[0].context, '@office')
        self.assertNotIn('errand', proposals[0].tasks)

    def test_single_member_group_produces_no_batch(self):
        tasks = [make_task('solo', context='@home', category='garden')]
        self.assertEqual(self.engine.auto_batch(tasks), [])

    def test_urgent_member_caps_batch_priority_at_high(self):
        tasks = [
            make_task('a', context='@office', category='calls', priority=Priority.URGENT),
            make_task('b', context='@office', category='calls', priority=Priority.MEDIUM),
        ]
        proposals = self.engine.auto_batch(tasks)

        self.assertEqual(proposals[0].priority, Priority.HIGH)

    def test_home_cleaning_scenario(self):
        tasks, errors = parse_tasks([
            {'id': 'a', 'context': '@home', 'category': 'cleaning', 'estimated_duration': 15,
             'priority': 'low', 'batch_id': None, 'status': 'inbox'},
            {'id': 'b', 'context': '@home', 'category': 'cleaning', 'estimated_duration': 20,
             'priority': 'medium', 'batch_id': None, 'status': 'inbox'},
        ])
        self.assertEqual(errors, [])

        proposals = self.engine.auto_batch(tasks)

        self.assertEqual(len(proposals), 1)
        self.assertEqual(proposals[0].to_dict(), {
            'name': '@home - cleaning',
            'tasks': ['a', 'b'],
            'total_duration': 35,
            'context': '@home',
            'priority': 'medium',
        })

    def test_batched_and_completed_tasks_are_skipped(self):
        tasks = [
            make_task('a', context='@office', category='calls', batch_id='existing'),
            make_task('b', context='@office', category='calls', status=TaskStatus.COMPLETED),
            make_task('c', context='@office', category='calls'),
        ]
        self.assertEqual(self.engine.auto_batch(tasks), [])

    def test_grouping_is_case_sensitive(self):
        tasks = [
            make_task('a', context='@office', category='calls'),
            make_task('b', context='@Office', category='calls'),
            make_task('c', context='@office', category='Calls'),
        ]
        self.assertEqual(self.engine.auto_batch(tasks), [])

    def test_rerun_without_assignment_duplicates_batches(self):
        """Known quirk: nothing marks members as batched between runs."""
        tasks = [
            make_task('a', context='@office', category='calls'),
            make_task('b', context='@office', category='calls'),
        ]
        first = self.engine.auto_batch(tasks)
        second = self.engine.auto_batch(tasks)

        self.assertEqual(first, second)
        self.assertEqual(len(first) + len(second), 2)

    def test_batch_priority_of_nothing_is_low(self):
        self.assertEqual(batch_priority([]), Priority.LOW)
    def test_invalid_records_are_left_out_of_batches(self):
        tasks = [
            make_task('a', context='@office', category='calls', estimated_duration=10),
            make_task('broken', context='@office', category='calls', estimated_duration=0),
            make_task('b', context='@office', category='calls', estimated_duration=25),
        ]
        with self.assertLogs('planner.engine', level='WARNING') as logs:
            proposals = self.engine.auto_batch(tasks)

        self.assertEqual(len(proposals), 1)
        self.assertEqual(proposals[0].tasks, ['a', 'b'])
        self.assertEqual(proposals[0].total_duration, 35)
        self.assertIn('broken', logs.output[0])


class DependencySuggesterTests(TestCase):
    """Tests for title-based dependency suggestions."""

    def setUp(self):
        self.tasks = [
            make_task('meeting', title='Client meeting with ACME'),
            make_task('slides', title='Prepare presentation for ACME'),
            make_task('agenda', title='Prepare agenda'),
            make_task('tests', title='Run tests on staging'),
        ]

    def test_client_meeting_suggests_preparation(self):
        suggestions = DependencySuggester().suggest('meeting', self.tasks)
        self.assertEqual(suggestions, ['slides', 'agenda'])

    def test_trigger_matches_substrings(self):
        """'subcontract' contains 'contract' and triggers that rule."""
        tasks = [
            make_task('sub', title='Sign subcontract'),
            make_task('legal', title='Legal review of terms'),
        ]
        self.assertEqual(DependencySuggester().suggest('sub', tasks), ['legal'])

    def test_task_never_suggests_itself(self):
        tasks = [make_task('d', title='Deploy after we run tests')]
        self.assertEqual(DependencySuggester().suggest('d', tasks), [])

    def test_duplicates_kept_unless_deduped(self):
        tasks = [
            make_task('meeting', title='Client meeting'),
            make_task('prep', title='Prepare presentation and prepare agenda'),
        ]
        suggester = DependencySuggester()

        self.assertEqual(suggester.suggest('meeting', tasks), ['prep', 'prep'])
        self.assertEqual(suggester.suggest('meeting', tasks, dedupe=True), ['prep'])
        self.assertEqual(DependencySuggester(dedupe=True).suggest('meeting', tasks), ['prep'])

    def test_unknown_task_has_no_suggestions(self):
        self.assertEqual(DependencySuggester().suggest('missing', self.tasks), [])


class CollectionViewTests(TestCase):
    """Tests for the Eisenhower matrix and batch progress helpers."""

    def test_matrix_groups_open_tasks(self):
        tasks = [
            make_task('both', urgent=True, important=True),
            make_task('important', important=True),
            make_task('urgent', urgent=True),
            make_task('neither'),
            make_task('done', urgent=True, important=True, status=TaskStatus.COMPLETED),
        ]
        matrix = eisenhower_matrix(tasks)

        self.assertEqual([t.id for t in matrix[EisenhowerQuadrant.DO_FIRST]], ['both'])
        self.assertEqual([t.id for t in matrix[EisenhowerQuadrant.SCHEDULE]], ['important'])
        self.assertEqual([t.id for t in matrix[EisenhowerQuadrant.DELEGATE]], ['urgent'])
        self.assertEqual([t.id for t in matrix[EisenhowerQuadrant.ELIMINATE]], ['neither'])

    def test_batch_progress(self):
        tasks = [
            make_task('a', status=TaskStatus.COMPLETED),
            make_task('b'),
            make_task('c', status=TaskStatus.COMPLETED),
            make_task('d'),
        ]
        self.assertEqual(batch_progress(['a', 'b', 'c', 'd'], tasks), 50.0)
        self.assertEqual(batch_progress(['a', 'c'], tasks), 100.0)
        self.assertEqual(batch_progress(['gone'], tasks), 0.0)


class TaskRecordParsingTests(TestCase):
    """Tests for building records from raw mappings."""

    def test_missing_id_is_invalid(self):
        with self.assertRaises(InvalidTaskRecord) as ctx:
            TaskRecord.from_dict({'estimated_duration': 10})
        self.assertEqual(ctx.exception.error.code, ErrorCode.ERR_MISSING_FIELD)
        self.assertEqual(ctx.exception.error.field, 'id')

    def test_missing_duration_is_invalid(self):
        with self.assertRaises(InvalidTaskRecord) as ctx:
            TaskRecord.from_dict({'id': 'x'})
        self.assertEqual(ctx.exception.error.field, 'estimated_duration')

    def test_non_positive_duration_is_invalid(self):
        with self.assertRaises(InvalidTaskRecord) as ctx:
            TaskRecord.from_dict({'id': 'x', 'estimated_duration': 0})
        self.assertEqual(ctx.exception.error.code, ErrorCode.ERR_INVALID_DURATION)

    def test_bad_deadline_is_invalid(self):
        with self.assertRaises(InvalidTaskRecord) as ctx:
            TaskRecord.from_dict({'id': 'x', 'estimated_duration': 10, 'deadline': 'next week'})
        self.assertEqual(ctx.exception.error.code, ErrorCode.ERR_INVALID_DATE)

    def test_unknown_priority_is_invalid(self):
        with self.assertRaises(InvalidTaskRecord) as ctx:
            TaskRecord.from_dict({'id': 'x', 'estimated_duration': 10, 'priority': 'asap'})
        self.assertEqual(ctx.exception.error.code, ErrorCode.ERR_INVALID_PRIORITY)

    def test_deadline_strings_become_aware_datetimes(self):
        record = TaskRecord.from_dict({
            'id': 'x',
            'estimated_duration': 10,
            'deadline': '2025-06-02T21:00:00Z',
        })
        self.assertEqual(record.deadline, NOW + timedelta(hours=12))

        record = TaskRecord.from_dict({'id': 'y', 'estimated_duration': 10, 'deadline': '2025-06-03'})
        self.assertEqual(record.deadline, datetime(2025, 6, 3, tzinfo=timezone.utc))

    def test_defaults(self):
        record = TaskRecord.from_dict({'id': 7, 'estimated_duration': '30'})

        self.assertEqual(record.id, '7')
        self.assertEqual(record.estimated_duration, 30)
        self.assertEqual(record.priority, Priority.MEDIUM)
        self.assertEqual(record.status, TaskStatus.INBOX)
        self.assertEqual(record.dependencies, set())
        self.assertIsNone(record.batch_id)

    def test_parse_tasks_skips_invalid(self):
        with self.assertLogs('planner.engine', level='WARNING'):
            records, errors = parse_tasks([
                {'id': 'ok', 'estimated_duration': 10},
                {'id': 'bad'},
            ])
        self.assertEqual([r.id for r in records], ['ok'])
        self.assertEqual(errors[0].task_id, 'bad')


class PlannerServiceTests(TestCase):
    """Tests for persisting engine results through an in-memory repository."""

    def office_tasks(self):
        return [
            make_task('a', context='@office', category='calls', estimated_duration=10),
            make_task('b', context='@office', category='calls', estimated_duration=20),
            make_task('c', context='@home', category='cleaning'),
            make_task('d', context='@home', category='cleaning'),
        ]

    def test_reprioritize_persists_changes(self):
        repository = InMemoryTaskRepository([
            make_task('a', urgent=True, important=True, estimated_duration=10),
            make_task('b'),
        ])
        service = PlannerService(repository)
        report = service.reprioritize(NOW)

        self.assertTrue(report.succeeded)
        self.assertEqual(report.attempted, 1)
        self.assertEqual(repository.tasks['a'].priority, Priority.MEDIUM)
        self.assertEqual(service.reprioritize(NOW).attempted, 0)

    def test_reprioritize_continues_past_failures(self):
        repository = FailingRepository(
            [make_task('a', priority=Priority.URGENT), make_task('b', priority=Priority.URGENT)],
            fail_priority={'a'},
        )
        report = PlannerService(repository).reprioritize(NOW)

        self.assertEqual(report.attempted, 2)
        self.assertEqual([c['task_id'] for c in report.applied], ['b'])
        self.assertEqual(len(report.failures), 1)
        self.assertEqual(report.failures[0].target_id, 'a')
        self.assertEqual(repository.tasks['a'].priority, Priority.URGENT)
        self.assertEqual(repository.tasks['b'].priority, Priority.LOW)

    def test_report_fails_when_nothing_lands(self):
        repository = FailingRepository([make_task('a', priority=Priority.URGENT)], fail_priority={'a'})
        report = PlannerService(repository).reprioritize(NOW)

        self.assertFalse(report.succeeded)
        self.assertEqual(report.to_dict()['failures'][0]['error_code'], 'ERR_PERSISTENCE')

    def test_auto_batch_links_members(self):
        repository = InMemoryTaskRepository(self.office_tasks())
        report = PlannerService(repository).auto_batch()

        self.assertEqual(len(report.applied), 2)
        self.assertEqual(len(repository.batches), 2)
        office = report.applied[0]
        self.assertEqual(office['name'], '@office - calls')
        self.assertEqual(repository.tasks['a'].batch_id, office['id'])
        self.assertEqual(repository.tasks['b'].batch_id, office['id'])

    def test_auto_batch_twice_on_same_service_creates_nothing_new(self):
        repository = InMemoryTaskRepository(self.office_tasks())
        service = PlannerService(repository)
        service.auto_batch()
        report = service.auto_batch()

        self.assertEqual(report.attempted, 0)
        self.assertEqual(len(repository.batches), 2)

    def test_atomic_batch_rolls_back_on_failed_assignment(self):
        repository = FailingRepository(self.office_tasks(), fail_assign={'b'})
        report = PlannerService(repository).auto_batch(atomic=True)

        self.assertEqual([b['name'] for b in report.applied], ['@home - cleaning'])
        self.assertEqual(len(report.failures), 1)
        self.assertEqual(len(repository.batches), 1)
        self.assertIsNone(repository.tasks['a'].batch_id)
        self.assertIsNone(repository.tasks['b'].batch_id)

    def test_best_effort_batch_leaves_partial_links(self):
        repository = FailingRepository(self.office_tasks(), fail_assign={'b'})
        report = PlannerService(repository, atomic_batching=False).auto_batch()

        office = report.applied[0]
        self.assertEqual(office['assigned'], ['a'])
        self.assertEqual(len(repository.batches), 2)
        self.assertEqual(repository.tasks['a'].batch_id, office['id'])
        self.assertIsNone(repository.tasks['b'].batch_id)
        self.assertEqual(report.failures[0].operation, 'assign_task_to_batch')

    def test_failed_batch_creation_skips_to_next_batch(self):
        repository = FailingRepository(self.office_tasks(), fail_batches={'@office - calls'})
        report = PlannerService(repository, atomic_batching=False).auto_batch()

        self.assertEqual([b['name'] for b in report.applied], ['@home - cleaning'])
        self.assertEqual(report.failures[0].operation, 'create_batch')
        self.assertIsNone(repository.tasks['a'].batch_id)

    def test_suggest_dependencies_sees_all_tasks(self):
        repository = InMemoryTaskRepository([
            make_task('report', title='Quarterly report'),
            make_task('data', title='Gather data from finance', status=TaskStatus.COMPLETED),
        ])
        self.assertEqual(PlannerService(repository).suggest_dependencies('report'), ['data'])
    def test_snapshot_is_reused_until_refreshed(self):
        """Tasks added behind the service's back are seen only after a refresh."""
        repository = InMemoryTaskRepository([make_task('a', priority=Priority.URGENT)])
        service = PlannerService(repository)
        service.open_tasks()
        repository.tasks['b'] = make_task('b', priority=Priority.URGENT)

        self.assertEqual([c['task_id'] for c in service.reprioritize(NOW).applied], ['a'])
        self.assertEqual([c['task_id'] for c in service.reprioritize(NOW, refresh=True).applied], ['b'])

    def test_invalidate_forces_reload(self):
        repository = InMemoryTaskRepository([make_task('a')])
        service = PlannerService(repository)
        self.assertEqual(service.reprioritize(NOW).attempted, 0)

        repository.tasks['c'] = make_task('c', priority=Priority.URGENT)
        self.assertEqual(service.reprioritize(NOW).attempted, 0)

        service.invalidate()
        report = service.reprioritize(NOW)
        self.assertEqual([c['task_id'] for c in report.applied], ['c'])
        self.assertEqual(repository.tasks['c'].priority, Priority.LOW)


class DjangoRepositoryTests(TestCase):
    """Tests for the planner service against the database."""

    def setUp(self):
        now = django_timezone.now()
        Task.objects.create(
            id='call-1', title='Call supplier', context='@office', category='calls',
            estimated_duration=10, priority='low', urgent=True, important=True,
            deadline=now + timedelta(hours=6),
        )
        Task.objects.create(
            id='call-2', title='Call bank', context='@office', category='calls',
            estimated_duration=20, priority='medium',
        )
        Task.objects.create(
            id='done', title='Old call', context='@office', category='calls',
            estimated_duration=5, priority='low', status='completed',
        )
        self.service = PlannerService(DjangoTaskRepository())

    def test_list_open_tasks_excludes_completed(self):
        ids = [task.id for task in DjangoTaskRepository().list_open_tasks()]
        self.assertEqual(ids, ['call-1', 'call-2'])

    def test_reprioritize_updates_rows(self):
        report = self.service.reprioritize()

        self.assertEqual(len(report.applied), 2)
        self.assertEqual(Task.objects.get(pk='call-1').priority, 'urgent')
        self.assertEqual(Task.objects.get(pk='call-2').priority, 'low')
        self.assertEqual(Task.objects.get(pk='done').priority, 'low')

    def test_auto_batch_creates_batch_and_links_members(self):
        report = self.service.auto_batch()

        self.assertEqual(len(report.applied), 1)
        batch = TaskBatch.objects.get()
        self.assertEqual(batch.name, '@office - calls')
        self.assertEqual(batch.tasks, ['call-1', 'call-2'])
        self.assertEqual(batch.total_duration, 30)
        self.assertEqual(batch.priority, 'medium')
        self.assertEqual(set(batch.members.values_list('id', flat=True)), {'call-1', 'call-2'})
        self.assertIsNone(Task.objects.get(pk='done').batch_id)

    def test_atomic_batch_is_rolled_back(self):
        original = DjangoTaskRepository.assign_task_to_batch

        def flaky_assign(repository, task_id, batch_id):
            if task_id == 'call-2':
                raise PersistenceFailure('assign_task_to_batch', task_id, 'simulated outage')
            return original(repository, task_id, batch_id)

        with mock.patch.object(DjangoTaskRepository, 'assign_task_to_batch', flaky_assign):
            report = self.service.auto_batch(atomic=True)

        self.assertEqual(report.applied, [])
        self.assertEqual(len(report.failures), 1)
        self.assertEqual(TaskBatch.objects.count(), 0)
        self.assertIsNone(Task.objects.get(pk='call-1').batch_id)

    def test_missing_task_raises_persistence_failure(self):
        with self.assertRaises(PersistenceFailure):
            DjangoTaskRepository().apply_priority('nope', Priority.HIGH)

    def test_model_clean_rejects_self_dependency(self):
        from django.core.exceptions import ValidationError as DjangoValidationError

        task = Task.objects.get(pk='call-1')
        task.dependencies = ['call-1']
        with self.assertRaises(DjangoValidationError):
            task.clean()


class APIEndpointTests(APITestCase):
    """Tests for the API endpoints."""

    def setUp(self):
        cache.clear()

    def post(self, url, data):
        return self.client.post(url, data=json.dumps(data), content_type='application/json')

    def test_prioritize_endpoint_success(self):
        data = {
            'now': '2025-06-02T09:00:00Z',
            'tasks': [
                {
                    'id': 'a',
                    'title': 'Ship release',
                    'deadline': '2025-06-02T21:00:00Z',
                    'estimated_duration': 10,
                    'priority': 'low',
                    'urgent': True,
                    'important': True,
                },
                {'id': 'b', 'title': 'Tidy desk', 'estimated_duration': 60, 'priority': 'low'},
            ]
        }
        response = self.post('/api/tasks/prioritize/', data)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(response.data['changes'], [
            {'task_id': 'a', 'old_priority': 'low', 'new_priority': 'urgent', 'score': 80}
        ])
        self.assertEqual(len(response.data['scores']), 2)
        self.assertEqual(response.data['summary']['tiers']['urgent'], 1)

    def test_prioritize_skips_invalid_tasks_with_warnings(self):
        data = {
            'tasks': [
                {'id': 'ok', 'estimated_duration': 60, 'priority': 'urgent'},
                {'id': 'bad', 'title': 'No duration'},
            ]
        }
        response = self.post('/api/tasks/prioritize/', data)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([c['task_id'] for c in response.data['changes']], ['ok'])
        self.assertEqual(response.data['warnings'][0]['task_id'], 'bad')
        self.assertEqual(response.data['warnings'][0]['error_code'], 'ERR_MISSING_FIELD')

    def test_prioritize_rejects_empty_list(self):
        response = self.post('/api/tasks/prioritize/', {'tasks': []})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(response.data['success'])
        self.assertEqual(response.data['error_code'], 'ERR_EMPTY_TASKS')

    def test_prioritize_rejects_all_invalid(self):
        response = self.post('/api/tasks/prioritize/', {'tasks': [{'title': 'nothing useful'}]})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error_code'], 'ERR_EMPTY_TASKS')

    def test_auto_batch_endpoint(self):
        data = {
            'tasks': [
                {'id': 'a', 'context': '@home', 'category': 'cleaning', 'estimated_duration': 15,
                 'priority': 'low', 'batch_id': None, 'status': 'inbox'},
                {'id': 'b', 'context': '@home', 'category': 'cleaning', 'estimated_duration': 20,
                 'priority': 'medium', 'batch_id': None, 'status': 'inbox'},
                {'id': 'c', 'context': '@office', 'category': 'calls', 'estimated_duration': 5},
            ]
        }
        response = self.post('/api/tasks/auto-batch/', data)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['batches'], [{
            'name': '@home - cleaning',
            'tasks': ['a', 'b'],
            'total_duration': 35,
            'context': '@home',
            'priority': 'medium',
        }])
        self.assertEqual(response.data['unbatched'], ['c'])

    def test_suggest_dependencies_endpoint(self):
        data = {
            'task_id': 'm',
            'dedupe': True,
            'tasks': [
                {'id': 'm', 'title': 'Client meeting', 'estimated_duration': 60},
                {'id': 'p', 'title': 'Prepare presentation and prepare agenda', 'estimated_duration': 30},
            ]
        }
        response = self.post('/api/tasks/suggest-dependencies/', data)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['suggestions'], ['p'])
        self.assertTrue(response.data['deduplicated'])

    def test_suggest_dependencies_unknown_task(self):
        data = {'task_id': 'ghost', 'tasks': [{'id': 'm', 'title': 'Client meeting', 'estimated_duration': 60}]}
        response = self.post('/api/tasks/suggest-dependencies/', data)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['error_code'], 'ERR_UNKNOWN_TASK')

    def test_matrix_endpoint(self):
        data = {
            'tasks': [
                {'id': 'a', 'estimated_duration': 10, 'urgent': True, 'important': True},
                {'id': 'b', 'estimated_duration': 10, 'important': True},
            ]
        }
        response = self.post('/api/tasks/matrix/', data)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['quadrants']['do_first'], ['a'])
        self.assertEqual(response.data['quadrants']['schedule'], ['b'])
        self.assertEqual(response.data['quadrants']['eliminate'], [])

    def test_apply_endpoints_persist(self):
        Task.objects.create(id='a', title='A', context='@office', category='calls',
                            estimated_duration=10, priority='urgent')
        Task.objects.create(id='b', title='B', context='@office', category='calls',
                            estimated_duration=10, priority='urgent')

        response = self.post('/api/tasks/prioritize/apply/', {})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['success'])
        self.assertEqual(Task.objects.get(pk='a').priority, 'low')

        response = self.post('/api/tasks/auto-batch/apply/', {'atomic': True})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['applied']), 1)
        self.assertEqual(TaskBatch.objects.count(), 1)

        Task.objects.filter(pk='a').update(status='completed')
        response = self.client.get('/api/batches/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['batches'][0]['progress'], 50.0)

    def test_api_info_endpoint(self):
        response = self.client.get('/api/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('name', response.data)
        self.assertIn('endpoints', response.data)
        self.assertIn('client meeting', response.data['dependency_rules'])

    def test_self_dependent_task_is_still_scored(self):
        data = {
            'now': '2025-06-02T09:00:00Z',
            'tasks': [{
                'id': 'a',
                'deadline': '2025-06-02T21:00:00Z',
                'estimated_duration': 10,
                'priority': 'low',
                'urgent': True,
                'important': True,
                'dependencies': ['a'],
            }]
        }
        response = self.post('/api/tasks/prioritize/', data)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['warnings'], [])
        self.assertEqual(response.data['changes'], [
            {'task_id': 'a', 'old_priority': 'low', 'new_priority': 'urgent', 'score': 85}
        ])

    def test_list_batches_reports_stats(self):
        Task.objects.create(id='a', title='A', status='completed', estimated_duration=10)
        Task.objects.create(id='b', title='B', status='completed', estimated_duration=10)
        Task.objects.create(id='c', title='C', estimated_duration=10)
        TaskBatch.objects.create(name='done', tasks=['a', 'b'], total_duration=20)
        TaskBatch.objects.create(name='open', tasks=['c'], total_duration=10)

        response = self.client.get('/api/batches/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['stats'], {
            'total_batches': 2,
            'completed_batches': 1,
            'total_tasks': 3,
            'average_progress': 50.0,
        })
