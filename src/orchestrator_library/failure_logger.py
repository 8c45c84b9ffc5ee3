# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from .errors import mask_credential

FAILURE_LOG_DIR = os.getenv("FAILURE_LOG_DIR", "logs")

_failure_logger: Optional[logging.Logger] = None


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.msg if isinstance(record.msg, dict) else record.getMessage(),
        }
        return json.dumps(log_record, default=str)


def setup_failure_logger(log_dir: str = FAILURE_LOG_DIR) -> logging.Logger:
    """Sets up a dedicated JSON logger for failed provider calls."""
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger("orchestrator_library.failures")
    logger.setLevel(logging.INFO)
    # Keep failure records out of the main application log
    logger.propagate = False

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        handler = RotatingFileHandler(
            os.path.join(log_dir, "failures.log"),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=2,
        )
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger


def get_failure_logger() -> logging.Logger:
    global _failure_logger
    if _failure_logger is None:
        _failure_logger = setup_failure_logger()
    return _failure_logger


def log_failure(
    provider_id: str,
    credential: Optional[str],
    attempt: int,
    error: BaseException,
    operation: Optional[str] = None,
) -> Dict[str, Any]:
    """Logs a structured message for a failed provider call."""
    raw_response = getattr(error, "response_text", None)
    if raw_response is None and hasattr(error, "response") and hasattr(error.response, "text"):
        raw_response = error.response.text

    log_data = {
        "provider": provider_id,
        "operation": operation,
        "credential_ending": mask_credential(credential),
        "attempt_number": attempt,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "raw_response": raw_response,
    }
    get_failure_logger().error(log_data)
    return log_data
