"""
URL configuration for the planner app.
"""

from django.urls import path
from . import views

urlpatterns = [
    path('', views.api_info, name='api-info'),
    path('tasks/prioritize/', views.prioritize_tasks, name='prioritize-tasks'),
    path('tasks/auto-batch/', views.auto_batch_tasks, name='auto-batch-tasks'),
    path('tasks/suggest-dependencies/', views.suggest_dependencies, name='suggest-dependencies'),
    path('tasks/matrix/', views.matrix, name='eisenhower-matrix'),
    # Endpoints that write to the database
    path('tasks/prioritize/apply/', views.apply_prioritization, name='apply-prioritization'),
    path('tasks/auto-batch/apply/', views.apply_auto_batch, name='apply-auto-batch'),
    path('batches/', views.list_batches, name='list-batches'),
]
