"""Structured logging with sensitive data masking."""

import logging
import re
import sys
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from structlog.types import FilteringBoundLogger

from ..config.settings import LoggingConfig

# Global logger instance
_logger: Optional[FilteringBoundLogger] = None

_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")


class SensitiveDataMasker:
    """Masks sensitive data in log messages."""

    def __init__(self, sensitive_fields: List[str]):
        self.sensitive_fields = set(field.lower() for field in sensitive_fields)
        self.mask_value = "***MASKED***"

    def mask_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively mask sensitive fields in dictionary."""
        masked_data = {}

        for key, value in data.items():
            if key.lower() in self.sensitive_fields:
                masked_data[key] = self.mask_value
            elif isinstance(value, dict):
                masked_data[key] = self.mask_dict(value)
            elif isinstance(value, list):
                masked_data[key] = [
                    self.mask_dict(item) if isinstance(item, dict) else item
                    for item in value
                ]
            else:
                masked_data[key] = value

        return masked_data

    def mask_string(self, text: str) -> str:
        """Mask e-mail addresses embedded in free text."""
        return _EMAIL_PATTERN.sub("email@masked.com", text)


class SensitiveDataProcessor:
    """Masks sensitive data in log records."""

    def __init__(self, masker: SensitiveDataMasker):
        self.masker = masker

    def __call__(self, logger, method_name, event_dict):
        masked_dict = self.masker.mask_dict(event_dict)

        if "event" in masked_dict and isinstance(masked_dict["event"], str):
            masked_dict["event"] = self.masker.mask_string(masked_dict["event"])

        return masked_dict


class StructuredLoggerManager:
    """Manages structured logging configuration and setup."""

    def __init__(self, config: LoggingConfig):
        self.config = config
        self.masker = SensitiveDataMasker(config.sensitive_fields)

    def build_processors(self) -> List[Any]:
        processors = [
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            SensitiveDataProcessor(self.masker),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
        ]

        if self.config.format == "json":
            processors.append(structlog.processors.JSONRenderer(default=str))
        else:
            processors.append(structlog.dev.ConsoleRenderer())

        return processors

    def configure_logging(self) -> FilteringBoundLogger:
        """Configure structured logging with all processors."""
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stdout,
            level=getattr(logging, self.config.level),
        )

        structlog.configure(
            processors=self.build_processors(),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        logger = structlog.get_logger()
        logger.info(
            "Structured logging configured",
            level=self.config.level,
            format=self.config.format,
            sensitive_fields_count=len(self.config.sensitive_fields),
        )

        return logger


class BusinessEventLogger:
    """Specialized logger for settlement, refund and payout actions."""

    def __init__(self, logger: FilteringBoundLogger):
        self.logger = logger

    def log_business_event(
        self,
        event_type: str,
        user_id: Optional[UUID],
        resource_type: str,
        resource_id: Optional[Any],
        action: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log business event with structured format."""
        self.logger.info(
            "Business event",
            event_category="business",
            event_type=event_type,
            user_id=str(user_id) if user_id else None,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            action=action,
            details=details or {},
        )

    def log_system_event(
        self,
        event_type: str,
        component: str,
        status: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log system event (orchestrator passes, job runs)."""
        level = "info" if status == "success" else "error"
        getattr(self.logger, level)(
            "System event",
            event_category="system",
            event_type=event_type,
            component=component,
            status=status,
            details=details or {},
        )


def configure_logging(config: LoggingConfig) -> FilteringBoundLogger:
    """Configure global structured logging."""
    global _logger

    if _logger is None:
        manager = StructuredLoggerManager(config)
        _logger = manager.configure_logging()

    return _logger


def get_business_logger() -> BusinessEventLogger:
    """Get business event logger.

    Works before ``configure_logging`` too; structlog falls back to its
    default pipeline until configured.
    """
    return BusinessEventLogger(structlog.get_logger("business"))
