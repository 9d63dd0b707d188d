#!/usr/bin/env python3
"""Run the recovery and retention sweeps once.

Usage:
    python sweep_jobs.py                 # both sweeps, resume via the configured dispatcher
    python sweep_jobs.py --inline        # resume orphaned jobs in this process
    python sweep_jobs.py --retention-only
"""

import argparse
import logging
from datetime import timedelta

from job_engine.core.container import build_container
from job_engine.core.logging import configure_logging
from job_engine.db.session import init_db
from job_engine.workers.sweeps import recovery_sweep, retention_sweep

logger = logging.getLogger("sweep_jobs")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--inline", action="store_true", help="run resumed and pending jobs here instead of dispatching")
    parser.add_argument("--retention-only", action="store_true", help="skip the recovery sweep")
    parser.add_argument("--stale-seconds", type=float, default=None, help="only recover jobs idle this long")
    args = parser.parse_args()

    container = build_container()
    configure_logging(container.settings.log_level)
    init_db(container.engine)

    if not args.retention_only:
        if args.inline:
            resume = lambda job_id: container.runner.run(job_id, resume=True)  # noqa: E731
            redispatch = container.runner.run
        else:
            resume = lambda job_id: container.dispatcher.dispatch(job_id, resume=True)  # noqa: E731
            redispatch = container.dispatcher.dispatch
        stale = args.stale_seconds
        if stale is None and not args.inline:
            stale = container.settings.recovery_stale_seconds
        report = recovery_sweep(
            container.store,
            container.publisher,
            resume=resume,
            redispatch=redispatch,
            stale_after=timedelta(seconds=stale) if stale else None,
        )
        print(f"Recovery: {report.as_dict()}")

    removed = retention_sweep(container.store, container.settings.retention_days)
    print(f"Retention: removed {removed} job(s) older than {container.settings.retention_days} day(s)")


if __name__ == "__main__":
    main()
