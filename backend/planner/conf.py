"""Planner settings, read from the ``PLANNER`` dict in Django settings."""

from django.conf import settings

DEFAULTS = {
    'DEDUPE_SUGGESTIONS': False,
    'ATOMIC_BATCHING': True,
    'PRIORITIZE_RATE': '60/min',
    'BATCH_RATE': '30/min',
}


def get_planner_settings():
    return {**DEFAULTS, **getattr(settings, 'PLANNER', {})}
