"""
WSGI config for the prospaces project.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'prospaces.settings')

application = get_wsgi_application()
