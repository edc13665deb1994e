"""
UJANI Health Check Endpoint

/health/ - Basic liveness check (for load balancers/Docker)
"""

from django.conf import settings
from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET


@csrf_exempt
@require_GET
def health_check(request):
    """
    Basic liveness check.
    Returns 200 if the Django process is alive.
    """
    return JsonResponse({
        'status': 'ok',
        'service': 'ujani-whatsapp-shop',
        'store': settings.UJANI_STORE_BACKEND,
        'timestamp': timezone.now().isoformat(),
    })
