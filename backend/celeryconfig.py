"""
Celery configuration for the deployflow worker.

Loaded by `celery_app.config_from_object("celeryconfig")` in
deployflow/tasks/__init__.py.  Broker and result backend come from the
application settings (CELERY_BROKER_URL / CELERY_RESULT_BACKEND).
"""

from deployflow.core.config import settings

# ── Broker & result backend ───────────────────────────────

broker_url = settings.CELERY_BROKER_URL
result_backend = settings.CELERY_RESULT_BACKEND

# ── Serialization: JSON only ──────────────────────────────

task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

timezone = "UTC"
enable_utc = True

# ── Task execution ────────────────────────────────────────

# Ack after the run finishes so a lost worker re-delivers the execution
task_acks_late = True
task_reject_on_worker_lost = True

# One execution per worker process at a time
worker_prefetch_multiplier = 1

# Hard ceiling slightly above the default execution timeout; the engine
# enforces the pipeline's own timeout first
task_soft_time_limit = int(settings.DEFAULT_EXECUTION_TIMEOUT_SECONDS) + 300
task_time_limit = task_soft_time_limit + 60

# Executions are not idempotent: never retry automatically
task_max_retries = 0

result_expires = 86400

worker_max_tasks_per_child = 100
worker_send_task_events = False
task_send_sent_event = False

# ── Routing ───────────────────────────────────────────────
# Run a dedicated worker for executions:
#   celery -A deployflow.tasks worker -Q pipeline

task_routes = {
    "deployflow.tasks.execution_tasks.*": {"queue": "pipeline"},
}

task_default_queue = "default"
