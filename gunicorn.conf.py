"""
Gunicorn configuration for the MoodPulse API.

Env vars that override defaults:
  PORT     TCP port to bind
  WORKERS  number of worker processes (default: 2)

Each worker owns its own service container (engines, breakers, fan-out
pool and in-process rate-limit fallback cache). The durable rate-limit
reservation is what keeps workers consistent.
"""
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"

workers = int(os.environ.get("WORKERS", "2"))

# Uvicorn's ASGI event loop inside Gunicorn's process manager.
worker_class = "uvicorn.workers.UvicornWorker"

keepalive = 5

timeout = 120

# App logs are JSON on stdout (see app/core/logging.py); access log stays plain.
loglevel = "info"
accesslog = "-"
errorlog = "-"
access_log_format = '%(h)s "%(r)s" %(s)s %(b)sB %(D)sµs'

# Leaves time for in-flight fan-out to drain on restart.
graceful_timeout = 30
