"""
Production Server Configuration

Run the tracking service with a Uvicorn worker under Gunicorn.

Per-key locks, delivery ids and sync leases live in-process unless
REDIS_URL is set, so keep a single worker without Redis.
"""

import os

# Server socket
bind = os.getenv("BIND", f"0.0.0.0:{os.getenv('WEBHOOK_PORT', '8000')}")
backlog = 2048

# Worker processes
workers = int(os.getenv("WORKERS", 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
timeout = 120
keepalive = 5
graceful_timeout = 30

# Process naming
proc_name = "commerce-tracking"

# Server mechanics
daemon = False
pidfile = None
user = None
group = None
tmp_upload_dir = None

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'


def when_ready(server):
    """Called when server is ready to receive connections."""
    server.log.info("Commerce tracking ready on %s", bind)


def worker_int(worker):
    """Called when worker receives INT or QUIT signal."""
    worker.log.info("Worker %s interrupted, shutting down", worker.pid)
