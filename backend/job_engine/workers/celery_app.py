"""Celery application for distributed job execution."""

import ssl

from celery import Celery

from job_engine.core.config import get_settings
from job_engine.core.logging import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

broker_url = settings.broker_url
backend_url = settings.result_backend_url

# Convert redis:// to rediss:// for Upstash domains to enable SSL
if ".upstash.io" in broker_url and broker_url.startswith("redis://"):
    broker_url = broker_url.replace("redis://", "rediss://", 1)
if ".upstash.io" in backend_url and backend_url.startswith("redis://"):
    backend_url = backend_url.replace("redis://", "rediss://", 1)
is_ssl = broker_url.startswith("rediss://") or backend_url.startswith("rediss://")

# The Redis result backend reads SSL options from the URL during init
if is_ssl:
    ssl_param = "ssl_cert_reqs=none"
    if "ssl_cert_reqs" not in broker_url:
        separator = "&" if "?" in broker_url else "?"
        broker_url = f"{broker_url}{separator}{ssl_param}"
    if "ssl_cert_reqs" not in backend_url:
        separator = "&" if "?" in backend_url else "?"
        backend_url = f"{backend_url}{separator}{ssl_param}"

celery_app = Celery(
    "job_engine",
    broker=broker_url,
    backend=backend_url,
)

# Task routing by queue: job execution and housekeeping scale separately
celery_app.conf.task_routes = {
    "job_engine.workers.tasks.run_job": {"queue": "jobs"},
    "job_engine.workers.tasks.recover_jobs": {"queue": "maintenance"},
    "job_engine.workers.tasks.sweep_expired_jobs": {"queue": "maintenance"},
}
celery_app.conf.task_default_queue = "jobs"

celery_app.conf.beat_schedule = {
    "recover-jobs": {
        "task": "job_engine.workers.tasks.recover_jobs",
        "schedule": settings.recovery_sweep_interval,
    },
    "sweep-expired-jobs": {
        "task": "job_engine.workers.tasks.sweep_expired_jobs",
        "schedule": settings.retention_sweep_interval,
    },
}

celery_config = {
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
    "enable_utc": True,
    "task_acks_late": True,  # Acknowledge after task completion
    "task_reject_on_worker_lost": True,  # Re-queue if worker dies
    "worker_prefetch_multiplier": 1,  # Fair task distribution
    "result_expires": 3600,
    "broker_connection_retry_on_startup": True,
    "worker_hijack_root_logger": False,
    "worker_concurrency": settings.worker_concurrency,
    "result_backend_always_retry": True,
    "result_backend_max_retries": 3,
}

if is_ssl:
    ssl_dict = {"ssl_cert_reqs": ssl.CERT_NONE}
    celery_config["broker_use_ssl"] = ssl_dict
    celery_config["redis_backend_use_ssl"] = ssl_dict
    celery_config["broker_transport_options"] = ssl_dict.copy()
    celery_config["result_backend_transport_options"] = ssl_dict.copy()

celery_app.conf.update(celery_config)

# Register tasks with celery_app
from job_engine.workers.tasks import maintenance, run_job  # noqa: E402,F401
