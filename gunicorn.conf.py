"""
Gunicorn configuration.
"""
import os

# Bind to the platform's PORT or default
bind = f"0.0.0.0:{os.getenv('PORT', '8080')}"

# Worker configuration
# Campaign side effects run on per-client threads inside each worker
workers = int(os.getenv('GUNICORN_WORKERS', '2'))
worker_class = 'gthread'
threads = int(os.getenv('GUNICORN_THREADS', '4'))
timeout = 120
keepalive = 5

# Logging
accesslog = '-'  # stdout
errorlog = '-'   # stderr
loglevel = os.getenv('LOG_LEVEL', 'info')
capture_output = True

# Process naming
proc_name = 'loyalty-core'

# Preload app so the scheduler starts once, in the master
preload_app = True

# Graceful restart
graceful_timeout = 30


def on_starting(server):
    print("[Gunicorn] Starting Loyalty Core server...")


def on_exit(server):
    print("[Gunicorn] Loyalty Core server shutting down...")
