#!/usr/bin/env python3
"""
Run FollowDesk jobs from the command line (system cron, k8s CronJob, manual).

Usage:
    python scripts/run_jobs.py escalate_follow_ups
    python scripts/run_jobs.py process_email_queue --limit 20
    python scripts/run_jobs.py all
    python scripts/run_jobs.py --list

Exit status is non-zero when any job reports errors.
"""
import argparse
import asyncio
import json
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Order for "all": escalations raise notifications, which queue emails
JOB_ORDER = [
    "escalate_follow_ups",
    "send_follow_up_reminders",
    "drain_notification_queue",
    "expire_todos",
    "process_email_queue",
]


async def run(names: list[str], limit: int = None, config: str = None) -> int:
    from dotenv import load_dotenv
    load_dotenv()

    from config.settings import load_settings
    from api.services import build_services
    from scheduler.jobs import EmailQueueJob

    services = build_services(load_settings(config))
    await services.start()
    failed = 0
    try:
        for name in names:
            job = services.jobs[name]
            if name == "process_email_queue" and limit:
                job = EmailQueueJob(services.processor, limit=limit)
            result = await job.trigger()
            print(json.dumps(result.model_dump(mode="json"), indent=2))
            failed += 0 if result.ok else 1
    finally:
        await services.close()
    return 1 if failed else 0


def main():
    parser = argparse.ArgumentParser(description="Trigger FollowDesk jobs")
    parser.add_argument("job", nargs="?", choices=JOB_ORDER + ["all"], help="Job to run")
    parser.add_argument("--limit", type=int, default=None, help="Email batch size")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    parser.add_argument("--list", action="store_true", help="List jobs and exit")
    args = parser.parse_args()

    if args.list or not args.job:
        print("\n".join(JOB_ORDER))
        return

    names = JOB_ORDER if args.job == "all" else [args.job]
    sys.exit(asyncio.run(run(names, limit=args.limit, config=args.config)))


if __name__ == "__main__":
    main()
