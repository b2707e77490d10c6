"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from pythonjsonlogger import jsonlogger

from settlement_gateway.config import settings
from settlement_gateway.domain.models import Transition


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding timestamp and service metadata"""

    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = datetime.now(timezone.utc).isoformat()
        log_record["level"] = record.levelname
        log_record["service"] = settings.service_name


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging"""
    logger = logging.getLogger()
    logger.setLevel(level)

    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


def log_transition(request_id: str, transition: Transition) -> None:
    """Log one state transition so entity histories can be rebuilt from logs"""
    logging.info(
        "State transition",
        extra={
            "request_id": request_id,
            "entity_type": transition.entity_type,
            "entity_id": transition.entity_id,
            "from_state": transition.from_state,
            "to_state": transition.to_state,
            "actor_id": transition.actor_id,
            "detail": transition.detail,
        },
    )


def log_domain_error(request_id: str, code: str, detail: str, path: str) -> None:
    """Log a rejected operation; these are expected business outcomes, not faults"""
    logging.warning(
        "Operation rejected",
        extra={"request_id": request_id, "error_code": code, "detail": detail, "path": path},
    )
