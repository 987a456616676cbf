"""
URL configuration for the gtd_planner project.
"""

from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from drf_spectacular.views import SpectacularAPIView, SpectacularRedocView, SpectacularSwaggerView


def home_view(request):
    """Root endpoint with API information."""
    return JsonResponse({
        'message': 'Welcome to the GTD Planner API',
        'version': '1.0.0',
        'endpoints': {
            'API Root': '/api/',
            'Prioritize Tasks': 'POST /api/tasks/prioritize/',
            'Auto-Batch Tasks': 'POST /api/tasks/auto-batch/',
            'Suggest Dependencies': 'POST /api/tasks/suggest-dependencies/',
            'API Documentation': '/api/docs/',
            'OpenAPI Schema': '/api/schema/',
        },
    })


urlpatterns = [
    path('', home_view, name='home'),
    path('admin/', admin.site.urls),
    path('api/', include('planner.urls')),
    # OpenAPI/Swagger Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),
    path('api/redoc/', SpectacularRedocView.as_view(url_name='schema'), name='redoc'),
]
