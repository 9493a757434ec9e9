"""Daemon logging.

Records go to stdout and to a per-day file under the logs directory
(`YYYY-MM-DD.log`). The day's file is read back verbatim when an incident is
reported to the control plane.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any

from pythonjsonlogger import json as jsonlogger

from .settings import Settings


TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def daily_log_path(logs_dir: str, day: date | None = None) -> str:
    day = day or date.today()
    return os.path.join(logs_dir, f"{day.isoformat()}.log")


def read_daily_log(logs_dir: str, day: date | None = None) -> str:
    """Content of the daemon log for `day` (today by default), '' if missing."""
    path = daily_log_path(logs_dir, day)
    try:
        with open(path, "rb") as fh:
            return fh.read().decode("utf-8", errors="replace")
    except FileNotFoundError:
        return ""


class DailyFileHandler(logging.FileHandler):
    """FileHandler that moves to a new file when the calendar date changes."""

    def __init__(self, logs_dir: str, encoding: str = "utf-8") -> None:
        os.makedirs(logs_dir, exist_ok=True)
        self.logs_dir = logs_dir
        self._day = date.today()
        super().__init__(daily_log_path(logs_dir, self._day), encoding=encoding, delay=True)

    def emit(self, record: logging.LogRecord) -> None:
        today = date.today()
        if today != self._day:
            self.acquire()
            try:
                if self.stream:
                    self.stream.close()
                    self.stream = None  # type: ignore[assignment]
                self._day = today
                self.baseFilename = os.path.abspath(daily_log_path(self.logs_dir, today))
            finally:
                self.release()
        super().emit(record)


class ShimJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def setup_logging(config: Settings) -> None:
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = ShimJsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    daily = DailyFileHandler(config.logs_dir)
    daily.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(stream)
    root_logger.addHandler(daily)
    root_logger.setLevel(level)

    # Heartbeats run every second per instance.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
