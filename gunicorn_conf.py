"""
Gunicorn configuration for Receipt Reconciler production deployment.

Values can be overridden with GUNICORN_* environment variables.
"""
import os

bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")
workers = int(os.getenv("GUNICORN_WORKERS", "2"))

# UvicornWorker provides async support required by FastAPI
worker_class = "uvicorn.workers.UvicornWorker"

# Retro runs stop themselves after RETRO_TIME_BUDGET_SECONDS, well below this
timeout = int(os.getenv("GUNICORN_TIMEOUT", "60"))
graceful_timeout = 30
keepalive = 2

# Log to stdout/stderr; application loggers are configured in reconciler.logging_config
accesslog = "-"
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
access_log_format = '%(h)s "%(r)s" %(s)s %(b)s %(D)s'

proc_name = "receipt_reconciler"
daemon = False

# Each worker opens its own engine; forking a shared SQLite connection is unsafe
preload_app = False
