import argparse
from pathlib import Path

from sqlalchemy import create_engine

from feed_pipeline import db_engine
from feed_pipeline.config import load_settings
from feed_pipeline.database import init_db
from feed_pipeline.worker import Worker
from llm.provider import build_registry
from notifications.push import TelegramPushTransport
from util.logging_util import setup_logger

logger = setup_logger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Feed ingestion and clustering worker")
    parser.add_argument("--config", type=Path, default=Path("config.yaml"), help="Path to YAML config")
    parser.add_argument("--once", action="store_true", help="Schedule and drain the queue once, then exit")
    parser.add_argument("--concurrency", type=int, default=None, help="Number of jobs to run in parallel")
    args = parser.parse_args()

    settings = load_settings(args.config)
    if args.concurrency is not None:
        settings.worker.concurrency = args.concurrency

    if settings.database_url:
        db_engine.set_engine(create_engine(settings.database_url))
    init_db()

    registry = build_registry(settings.ai.provider, settings.ai.model, settings.ai.api_key)
    push_transport = None
    if settings.push.telegram_bot_token:
        push_transport = TelegramPushTransport(settings.push.telegram_bot_token, settings.timeouts.push)

    worker = Worker(settings, provider=registry.get(), push_transport=push_transport)
    if args.once:
        ran = worker.run_once()
        logger.info(f"Ran {ran} jobs")
        return

    try:
        worker.run_forever()
    except KeyboardInterrupt:
        logger.info("Stopping feed worker")
        worker.stop()


if __name__ == "__main__":
    main()
