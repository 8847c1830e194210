#!/usr/bin/env python
import asyncio
import logging
import sys

from loguru import logger

from bulkbuy.config import LOG_LEVEL, BulkBuySettings, ConfigError
from bulkbuy.scripts.result_reporter import ResultReporter
from bulkbuy.solana.context import RunContext
from bulkbuy.solana.pipeline import BulkBuyPipeline
from bulkbuy.solana.wallet_manager import KeystoreError


def _flatten_extra(record):
    """Lift fields passed as extra={...} to the top level of record["extra"]."""
    nested = record["extra"].pop("extra", None)
    if isinstance(nested, dict):
        record["extra"].update(nested)


def _console_format(record) -> str:
    fields = " ".join(f"{key}={value}" for key, value in record["extra"].items() if not key.startswith("_"))
    record["extra"]["_fields"] = f" | {fields}" if fields else ""
    return "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}{extra[_fields]}\n{exception}"


def setup_logging(level: str = LOG_LEVEL):
    """
    Configure loguru for one run.

    Fields logged with extra={...} (stage, batch_index, endpoint, status...)
    become top-level keys in the JSON log file and trail the message on stdout.
    """
    level = level.upper()
    logger.remove()
    logger.configure(patcher=_flatten_extra)
    logger.add(
        "logs/bulk_buy_{time}.log",
        rotation="1 day",
        retention="14 days",
        level=level,
        serialize=True,
    )
    logger.add(sys.stdout, level=level, format=_console_format)

    # solana-py logs through httpx, which reports every RPC request at INFO
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)


class InterceptHandler(logging.Handler):
    """Route stdlib logging records into loguru, tagged with the source logger name."""
    def emit(self, record):
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).bind(source=record.name).log(level, record.getMessage())


async def main() -> int:
    """Run the bulk buy pipeline once; returns the process exit status."""
    setup_logging()

    logger.info("Starting multi-wallet bulk buy")

    try:
        settings = BulkBuySettings.from_env()
        context = RunContext.from_settings(settings)
    except (ConfigError, KeystoreError) as e:
        logger.error(f"Configuration error: {str(e)}")
        return 2

    try:
        summary = await BulkBuyPipeline(context).run()
    except Exception as e:
        logger.exception(f"Bulk buy failed: {type(e).__name__} - {str(e)}")
        return 1
    finally:
        await context.close()

    reporter = ResultReporter(str(settings.report_dir))
    print(reporter.generate_console_report(summary))
    if settings.report_format != "none":
        reporter.save_detailed_report(summary, settings.report_format)

    return 0


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
