"""Structured JSON logging for production observability"""

import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

from tryon_billing.config import settings


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter with timestamp and service metadata"""

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


def log_deduction(
    installation_id: str,
    operation_id: str,
    source: Optional[str],
    success: bool,
    credits_remaining: int,
    breakdown: Dict[str, int],
    code: Optional[str] = None,
) -> None:
    """Log structured deduction outcome for usage analysis"""
    logging.info(
        "Deduction completed",
        extra={
            "installation_id": installation_id,
            "operation_id": operation_id,
            "step": "deduction_complete",
            "source": source,
            "outcome": "success" if success else "failure",
            "credits_remaining": credits_remaining,
            "breakdown": breakdown,
            "code": code,
        },
    )


def log_overage_settlement(
    installation_id: str,
    outcome: str,
    amount: Decimal,
    overage_count: int,
    original_amount: Optional[Decimal] = None,
) -> None:
    logging.info(
        "Overage settlement",
        extra={
            "installation_id": installation_id,
            "step": "overage_settlement",
            "outcome": outcome,
            "amount": str(amount),
            "original_amount": str(original_amount) if original_amount is not None else None,
            "overage_count": overage_count,
        },
    )


def log_period_renewal(installation_id: str, credits_added: int, period_end: Optional[datetime], is_annual: bool) -> None:
    logging.info(
        "Billing period renewed",
        extra={
            "installation_id": installation_id,
            "step": "period_renewal",
            "credits_added": credits_added,
            "period_end": period_end.isoformat() if period_end else None,
            "is_annual": is_annual,
        },
    )


def log_trial_event(installation_id: str, event: str, **fields: Any) -> None:
    logging.info(
        f"Trial {event}",
        extra={"installation_id": installation_id, "step": f"trial_{event}", **fields},
    )
