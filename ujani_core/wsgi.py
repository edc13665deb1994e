"""
WSGI entry point for UJANI.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'ujani_core.settings')

application = get_wsgi_application()
