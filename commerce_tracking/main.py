"""
ASGI entry point

    uvicorn commerce_tracking.main:app
    gunicorn commerce_tracking.main:app -c gunicorn.conf.py
"""

from commerce_tracking.serving.api import create_app

app = create_app(exception_hooks=True)
