"""Main entry point for the collaboration notifier."""

import argparse
import asyncio
import logging
import os
import sys
from datetime import datetime
from typing import Optional

import uvicorn

from .auth import generate_token
from .config import AppConfig, load_config
from .db import get_user_by_email, init_db
from .scheduler import JOBS
from .server import build_services, create_app

# Configure logging
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)


def serve(config: AppConfig) -> None:
    """Run the websocket gateway, the notification API and the scheduler."""
    app = create_app(config)
    logger.info(f"Starting server on {config.gateway.host}:{config.gateway.port}")
    uvicorn.run(app, host=config.gateway.host, port=config.gateway.port, log_level=log_level.lower())


def run_job(config: AppConfig, job_id: str, now: Optional[datetime] = None) -> int:
    """
    Fire one digest job once, outside the scheduler.

    Returns:
        Process exit code.
    """
    services = build_services(config)
    try:
        report = asyncio.run(services.generator.run_job(job_id, now=now))
    finally:
        services.database.close()
    if report.skipped:
        logger.info(f"{job_id} skipped: slot {report.slot.isoformat()} already handled")
        return 0
    return 1 if report.failed or report.timed_out else 0


def init_database(config: AppConfig) -> None:
    logger.info(f"Initializing database at {config.database.db_path}...")
    conn = init_db(config.database.db_path)
    conn.close()
    logger.info("Database ready.")


def issue_token(config: AppConfig, email: str) -> int:
    """Print a bearer token for an existing user."""
    conn = init_db(config.database.db_path)
    try:
        user = get_user_by_email(conn, email)
    finally:
        conn.close()
    if user is None:
        logger.error(f"No user with email {email}")
        return 1
    print(generate_token(user.id, user.email, config.auth))
    return 0


def main(argv=None) -> int:
    """Main entry point with command-line argument parsing."""
    parser = argparse.ArgumentParser(
        description="Real-time collaboration and notification engine"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("serve", help="Run the gateway, API and digest scheduler")

    job_parser = subparsers.add_parser("run-job", help="Fire one digest job now")
    job_parser.add_argument("job", choices=JOBS)
    job_parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Firing time in ISO format (default: current time)"
    )

    subparsers.add_parser("init-db", help="Create the database tables")

    token_parser = subparsers.add_parser("token", help="Print a bearer token for a user")
    token_parser.add_argument("email")

    args = parser.parse_args(argv)

    try:
        config = load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 2

    if args.command == "serve":
        serve(config)
        return 0
    if args.command == "run-job":
        return run_job(config, args.job, now=args.now)
    if args.command == "init-db":
        init_database(config)
        return 0
    return issue_token(config, args.email)


if __name__ == "__main__":
    sys.exit(main())
