"""
Task and batch models for the GTD planner.

This module defines the persisted counterparts of the engine records:
tasks with GTD status, Eisenhower flags and grouping keys, and the batches
produced by auto-batching.
"""

import uuid

from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models


def new_id():
    return str(uuid.uuid4())


class TaskBatch(models.Model):
    """
    A group of similar tasks meant to be worked through together.

    Attributes:
        name: "{context} - {category}" of the first grouped task
        tasks: JSON list of member task ids, as grouped at creation
        total_duration: Sum of member durations at creation (minutes)
        context: Context shared by the members
        priority: Highest member priority, never urgent
        scheduled: Optional time slot picked by the user
    """

    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
    ]

    id = models.CharField(primary_key=True, max_length=36, default=new_id, editable=False)
    name = models.CharField(max_length=255)
    tasks = models.JSONField(default=list, blank=True)
    total_duration = models.PositiveIntegerField(default=0)
    context = models.CharField(max_length=100, blank=True, default='')
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='medium')
    scheduled = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.name} ({len(self.tasks)} tasks)"


class Task(models.Model):
    """
    Represents a task tracked by the planner.

    Attributes:
        title: The task's descriptive title
        status: GTD status
        priority: Priority tier, rewritten by reprioritization
        estimated_duration: Expected minutes to complete
        deadline: Optional deadline
        urgent / important: Eisenhower Matrix flags
        context / category: Keys used to batch similar tasks
        dependencies: JSON list of task ids this task depends on
        batch: Owning batch, if the task has been batched
    """

    STATUS_CHOICES = [
        ('inbox', 'Inbox'),
        ('next-action', 'Next Action'),
        ('waiting-for', 'Waiting For'),
        ('project', 'Project'),
        ('someday-maybe', 'Someday/Maybe'),
        ('completed', 'Completed'),
    ]

    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('urgent', 'Urgent'),
    ]

    id = models.CharField(primary_key=True, max_length=36, default=new_id, editable=False)
    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default='')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='inbox')
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='medium')
    estimated_duration = models.PositiveIntegerField(
        default=30,
        validators=[MinValueValidator(1)],
        help_text="Estimated minutes to complete"
    )
    deadline = models.DateTimeField(null=True, blank=True)
    urgent = models.BooleanField(default=False)
    important = models.BooleanField(default=False)
    context = models.CharField(max_length=100, blank=True, default='')
    category = models.CharField(max_length=100, blank=True, default='')
    dependencies = models.JSONField(
        default=list,
        blank=True,
        help_text="List of task IDs that this task depends on"
    )
    batch = models.ForeignKey(
        TaskBatch,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name='members'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ['created_at', 'id']

    def __str__(self):
        return f"{self.title} ({self.priority})"

    def clean(self):
        if self.dependencies is None:
            self.dependencies = []

        if not isinstance(self.dependencies, list):
            raise ValidationError({'dependencies': 'Dependencies must be a list of task IDs'})

        if self.id in self.dependencies:
            raise ValidationError({'dependencies': 'A task cannot depend on itself'})

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'deadline': self.deadline,
            'estimated_duration': self.estimated_duration,
            'priority': self.priority,
            'status': self.status,
            'urgent': self.urgent,
            'important': self.important,
            'context': self.context,
            'category': self.category,
            'dependencies': self.dependencies,
            'batch_id': self.batch_id,
        }
