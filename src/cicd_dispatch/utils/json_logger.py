"""
JSON structured logging utilities for the dispatch engine.
"""

import json
import logging
import sys
import time
from typing import Any, Dict, Optional, Union

CONTEXT_FIELDS = ("event_id", "run_id", "pipeline_id", "job_id")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Formats log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": int(time.time() * 1000),  # Unix timestamp in milliseconds
            "level": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "funcName": record.funcName,
            "lineno": record.lineno,
        }

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        # Dispatch context, when the caller passed it through ``extra``
        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                payload[attr] = getattr(record, attr)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_json_logging(
    level: Union[int, str] = logging.INFO, log_format: str = "json"
) -> None:
    """Configure the root logger for JSON (or plain text) output on stderr."""
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)


class JobLoggerAdapter(logging.LoggerAdapter):
    """Adds job context to every record."""

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def create_job_logger(
    job_id: str,
    run_id: Optional[str] = None,
    pipeline_id: Optional[str] = None,
    name: str = "cicd_dispatch.job",
) -> JobLoggerAdapter:
    """Logger that stamps job_id/run_id/pipeline_id on every record."""
    context = {"job_id": job_id}
    if run_id is not None:
        context["run_id"] = run_id
    if pipeline_id is not None:
        context["pipeline_id"] = pipeline_id
    return JobLoggerAdapter(logging.getLogger(name), context)
