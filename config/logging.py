# coding: utf-8
"""
Logging configuration with loguru for Meridian Fee Billing

Each process (API, weekly billing cron, brokerage sync cron) writes its own
daily file. Everything the charge orchestrator and webhook reconciler log
also lands in a separate payments file that is kept for a year, since those
lines are what support looks at when a user disputes a charge.
"""
import logging
import sys
from pathlib import Path
from loguru import logger
import sentry_sdk

from config.config import LOG_LEVEL, ENVIRONMENT, SENTRY_DSN


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} | {message}"

# Modules whose records go to the payments file
PAYMENT_LOGGERS = (
    "src.services.charge_orchestrator",
    "src.services.webhook_reconciler",
    "src.services.payment_gateway",
    "src.database.billing_store",
)


class StdlibForwarder(logging.Handler):
    """
    Route stdlib `logging` records (database helpers, HTTP clients, tenacity)
    into loguru so that every sink sees them.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        logger.opt(exception=record.exc_info).patch(
            lambda r: r.update(name=record.name, function=record.funcName, line=record.lineno)
        ).log(level, record.getMessage())


def is_payment_record(record) -> bool:
    return record["name"].startswith(PAYMENT_LOGGERS)


def setup_logging(component: str = "api", log_to_file: bool = True) -> None:
    """
    Setup loguru sinks for one process

    Args:
        component: Prefix for the daily log file (api, weekly_billing, brokerage_sync)
        log_to_file: Disable to log to stdout only (one-off scripts, containers)
    """
    logger.remove()

    logger.add(
        sys.stdout,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>"
        ),
        level=LOG_LEVEL,
        colorize=True,
    )

    if log_to_file:
        logs_dir = Path(__file__).parent.parent / "logs"
        logs_dir.mkdir(exist_ok=True)

        logger.add(
            logs_dir / f"{component}_{{time:YYYY-MM-DD}}.log",
            format=LOG_FORMAT,
            level="DEBUG",
            rotation="00:00",
            retention="14 days",
            compression="zip",
            encoding="utf-8",
        )

        # Charges, refunds and webhook outcomes, one file per month
        logger.add(
            logs_dir / "payments_{time:YYYY-MM}.log",
            format=LOG_FORMAT,
            level="INFO",
            filter=is_payment_record,
            rotation="1 month",
            retention="365 days",
            compression="zip",
            encoding="utf-8",
        )

    if SENTRY_DSN:
        logger.add(sentry_sink, level="ERROR", format="{message}")

    # stdlib loggers used by crud/billing_store and the tenacity-wrapped clients
    logging.basicConfig(handlers=[StdlibForwarder()], level=logging.INFO, force=True)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.ERROR)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.info(f"Logging ready | component={component} | env={ENVIRONMENT} | level={LOG_LEVEL}")


def sentry_sink(message):
    """
    Send ERROR and CRITICAL records to Sentry

    Records logged with an exception attached go through capture_exception
    so Sentry groups them by traceback rather than by message text.
    """
    record = message.record

    if record["exception"]:
        sentry_sdk.capture_exception(record["exception"].value)
        return

    sentry_sdk.capture_message(
        record["message"],
        level="error" if record["level"].name == "ERROR" else "fatal",
        extras={
            "logger": record["name"],
            "function": record["function"],
            "line": record["line"],
        },
    )
