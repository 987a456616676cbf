"""
Serializers for planner requests.

Bulk payloads are checked for shape only; each task is then validated on
its own so one bad record is reported and skipped instead of failing the
whole request.
"""

from rest_framework import serializers

from .models import Task


class TaskInputSerializer(serializers.Serializer):
    """
    Serializer for a single task submitted for analysis.

    Tasks submitted to the compute endpoints need not exist in the database.
    """

    id = serializers.CharField(max_length=64)
    title = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    deadline = serializers.DateTimeField(required=False, allow_null=True, default=None)
    estimated_duration = serializers.IntegerField(min_value=1)
    priority = serializers.ChoiceField(choices=Task.PRIORITY_CHOICES, default='medium')
    status = serializers.ChoiceField(choices=Task.STATUS_CHOICES, default='inbox')
    urgent = serializers.BooleanField(default=False)
    important = serializers.BooleanField(default=False)
    context = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    category = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')
    dependencies = serializers.ListField(
        child=serializers.CharField(),
        required=False,
        default=list
    )
    batch_id = serializers.CharField(required=False, allow_null=True, allow_blank=True, default=None)

    def validate_id(self, value):
        if not value.strip():
            raise serializers.ValidationError("Task id cannot be empty")
        return value.strip()


class TaskBulkInputSerializer(serializers.Serializer):
    """Request body for the compute endpoints."""

    tasks = serializers.ListField(
        child=serializers.DictField(),
        min_length=1,
        error_messages={
            'min_length': 'At least one task is required'
        }
    )
    now = serializers.DateTimeField(required=False, allow_null=True, default=None)


class SuggestDependenciesSerializer(TaskBulkInputSerializer):
    task_id = serializers.CharField()
    dedupe = serializers.BooleanField(required=False, allow_null=True, default=None)


class AutoBatchApplySerializer(serializers.Serializer):
    atomic = serializers.BooleanField(required=False, allow_null=True, default=None)
