#!/usr/bin/env python3
"""
Inbox Rules Pipeline - Main entry point
"""
import argparse
import os
import sys
import threading

# Add the repository root to the Python path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog
from dotenv import load_dotenv

from src.ai.client import CompletionClient
from src.config import Settings, get_settings
from src.database import EmailAccount, ExecutedRule, get_db_session, init_db
from src.digest.scheduler import tick
from src.ledger.drafts import cleanup_stale_drafts
from src.logging_config import configure_logging
from src.pipeline import MessagePipeline
from src.providers import create_provider
from src.queue.locks import MessageLocks
from src.queue.queue import BULK_ACTION, account_queue_name, publish
from src.queue.tasks import TaskContext
from src.queue.worker import Worker
from src.rules.loader import load_rules

logger = structlog.get_logger()


def parse_args(argv=None):
    """Parse command line arguments"""
    parser = argparse.ArgumentParser(description='Inbox Rules Pipeline')
    commands = parser.add_subparsers(dest='command', required=True)

    serve = commands.add_parser('serve', help='Run the webhook API')
    serve.add_argument('--host', default='0.0.0.0')
    serve.add_argument('--port', type=int, default=8000)

    commands.add_parser('worker', help='Process queued tasks')

    tick_parser = commands.add_parser('tick', help='Enqueue due digests')
    tick_parser.add_argument('--once', action='store_true', help='Run a single tick and exit')

    commands.add_parser('cleanup-drafts', help='Delete stale, unedited AI drafts')

    sync = commands.add_parser('sync-rules', help='Sync a rules file for an account')
    sync.add_argument('--account', required=True, help='Account email address')
    sync.add_argument('--file', help='Rules file (defaults to RULES_FILE)')
    sync.add_argument('--provider', choices=['google', 'microsoft'], default='google',
                      help='Provider used when the account does not exist yet')

    approve = commands.add_parser('approve', help='Run a planned (PENDING) rule')
    approve.add_argument('executed_rule_id', type=int)

    bulk = commands.add_parser('bulk', help='Archive or mark read all inbox mail from a sender')
    bulk.add_argument('--account', required=True)
    bulk.add_argument('--action', choices=['archive', 'mark_read'], required=True)
    bulk.add_argument('--from', dest='sender', required=True)

    return parser.parse_args(argv)


def _find_account(db, email: str):
    return db.query(EmailAccount).filter(EmailAccount.email == email.strip().lower()).first()


def context_factory(settings: Settings):
    """Build task contexts that share one AI client and one Redis connection"""
    ai = CompletionClient(settings)
    locks = MessageLocks.from_url(settings.redis_url, settings.message_lock_ttl_seconds)

    def build(db) -> TaskContext:
        return TaskContext(
            db=db,
            settings=settings,
            provider_factory=lambda account: create_provider(account, settings),
            ai=ai,
            locks=locks,
        )
    return build


def run_serve(args, settings: Settings) -> None:
    import uvicorn

    logger.info("Starting webhook API", host=args.host, port=args.port)
    uvicorn.run("src.api.app:app", host=args.host, port=args.port, log_level=settings.log_level.lower())


def run_worker(args, settings: Settings) -> None:
    logger.info("Starting worker", timeout=settings.task_timeout_seconds)
    worker = Worker(context_factory(settings), settings=settings)
    try:
        worker.run_forever()
    except KeyboardInterrupt:
        logger.info("Worker stopped")


def run_tick(args, settings: Settings) -> None:
    stop = threading.Event()
    while True:
        db = get_db_session()
        try:
            enqueued = tick(db, parallelism=settings.account_queue_parallelism)
        finally:
            db.close()
        logger.info("Digest tick", enqueued=enqueued)
        if args.once:
            return
        try:
            stop.wait(settings.digest_tick_seconds)
        except KeyboardInterrupt:
            logger.info("Scheduler stopped")
            return


def run_cleanup_drafts(args, settings: Settings) -> None:
    db = get_db_session()
    try:
        counts = cleanup_stale_drafts(db, lambda account: create_provider(account, settings),
                                      settings.draft_stale_days)
    finally:
        db.close()
    logger.info("Draft cleanup completed", **counts)


def run_sync_rules(args, settings: Settings) -> None:
    db = get_db_session()
    try:
        account = _find_account(db, args.account)
        if account is None:
            account = EmailAccount(email=args.account.strip().lower(), provider=args.provider)
            db.add(account)
            db.flush()
            logger.info("Created account", email=account.email, provider=account.provider)
        rules_config = load_rules(db, account, args.file)
        logger.info("Rules synced to database", account=account.email, count=len(rules_config.rules))
    finally:
        db.close()


def run_approve(args, settings: Settings) -> None:
    db = get_db_session()
    try:
        executed = db.get(ExecutedRule, args.executed_rule_id)
        if executed is None:
            logger.error("Executed rule not found", id=args.executed_rule_id)
            sys.exit(1)
        account = db.get(EmailAccount, executed.account_id)
        ctx = context_factory(settings)(db)
        pipeline = MessagePipeline(db, ctx.provider_factory(account), ctx.ai, ctx.locks, settings)
        pipeline.approve(executed)
        logger.info("Approved", id=executed.id, status=executed.status)
    finally:
        db.close()


def run_bulk(args, settings: Settings) -> None:
    db = get_db_session()
    try:
        account = _find_account(db, args.account)
        if account is None:
            logger.error("Account not found", email=args.account)
            sys.exit(1)
        task = publish(db, account_queue_name(account.id), BULK_ACTION,
                       {'accountId': account.id, 'action': args.action, 'from': args.sender},
                       parallelism=settings.account_queue_parallelism)
        db.commit()
        logger.info("Bulk action queued", task_id=task.id, action=args.action, sender=args.sender)
    finally:
        db.close()


COMMANDS = {
    'serve': run_serve,
    'worker': run_worker,
    'tick': run_tick,
    'cleanup-drafts': run_cleanup_drafts,
    'sync-rules': run_sync_rules,
    'approve': run_approve,
    'bulk': run_bulk,
}


def main(argv=None):
    """Main entry point for the Inbox Rules Pipeline"""
    args = parse_args(argv)

    # Load environment variables
    load_dotenv()
    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        init_db()
        COMMANDS[args.command](args, settings)
    except Exception as e:
        logger.error("Command failed", command=args.command, error=str(e))
        raise


if __name__ == "__main__":
    main()
