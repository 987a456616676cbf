from django.contrib import admin

from .models import Task, TaskBatch


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ('title', 'status', 'priority', 'context', 'category', 'deadline', 'batch')
    list_filter = ('status', 'priority', 'urgent', 'important')
    search_fields = ('title', 'context', 'category')


@admin.register(TaskBatch)
class TaskBatchAdmin(admin.ModelAdmin):
    list_display = ('name', 'context', 'priority', 'total_duration', 'created_at')
    readonly_fields = ('tasks', 'total_duration')
