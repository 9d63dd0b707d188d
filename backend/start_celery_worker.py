#!/usr/bin/env python3
"""Start a Celery worker for job execution and maintenance queues."""

import sys
import warnings

# Suppress the superuser privilege warning
warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from job_engine.workers.celery_app import celery_app  # noqa: E402

if __name__ == '__main__':
    celery_app.worker_main(
        argv=[
            'worker',
            '--loglevel=info',
            '--queues=jobs,maintenance',
            '--without-mingle',
            '--without-gossip',
        ]
        + sys.argv[1:]
    )
