"""
URL configuration for backend project.

Routes include the billing API, health checks, and metrics endpoints.
"""
import os
from prometheus_client import CollectorRegistry, multiprocess, generate_latest, REGISTRY
from django.urls import path, include
from django.http import HttpResponse

# Initialize Prometheus registry
# Use multiprocess collector only if PROMETHEUS_MULTIPROC_DIR is set (production)
# Otherwise use default registry (development)
if os.environ.get('PROMETHEUS_MULTIPROC_DIR'):
    registry = CollectorRegistry()
    multiprocess.MultiProcessCollector(registry)
else:
    registry = REGISTRY


def health_check(request):
    return HttpResponse("OK", content_type="text/plain")


def billing_metrics(request):
    payload = generate_latest(registry)
    return HttpResponse(payload, content_type="text/plain; version=0.0.4")


urlpatterns = [
    path('api/', include('billing.urls', namespace='billing')),
    path('health/', health_check, name='health_check'),
    path('metrics/billing/', billing_metrics, name='billing_metrics'),
]
