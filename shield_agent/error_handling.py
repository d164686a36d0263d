"""
Error taxonomy, retry policy and error collection for the shield agent.

Failures degrade to "skip, default, or report"; none of these exceptions is
allowed to terminate a scan cycle.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List

import structlog
from tenacity import (
    retry, stop_after_attempt, wait_exponential,
    retry_if_exception_type, before_sleep_log
)

logger = structlog.get_logger()


class ShieldAgentError(Exception):
    """Base class for shield agent errors"""
    pass


class ExternalAPIError(ShieldAgentError):
    """Raised when an off-chain API call fails"""
    pass


class ChainReadError(ShieldAgentError):
    """Raised when an on-chain read fails or returns an unexpected shape"""
    pass


class BudgetExceededError(ShieldAgentError):
    """Raised when a read is attempted past the cycle budget.

    Callers pre-check affordability, so reaching this is a logic error.
    """

    def __init__(self, what: str, cost: int, remaining: int):
        self.what = what
        self.cost = cost
        self.remaining = remaining
        super().__init__(f"Budget exceeded for {what}: cost {cost}, remaining {remaining}")


class WriteError(ShieldAgentError):
    """Raised by writers when a submission is rejected"""
    pass


class EventDecodeError(ShieldAgentError):
    """Raised when a threat-change event payload cannot be decoded"""
    pass


class ConfigurationError(ShieldAgentError):
    """Raised when the deployment configuration is missing or invalid"""
    pass


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exceptions: tuple = (Exception,)
):
    """Retry decorator with exponential backoff"""
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


class ErrorCollector:
    """Collects errors with context for the status endpoint"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Dict[str, Any] = None):
        """Record an error with context"""
        error_info = {
            "timestamp": datetime.utcnow().isoformat(),
            "type": type(error).__name__,
            "message": str(error),
            "context": context or {}
        }

        self.errors.append(error_info)

        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        error_type = type(error).__name__
        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.error(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context
        )

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.utcnow() - timedelta(hours=hours)

        recent_errors = [
            error for error in self.errors
            if datetime.fromisoformat(error["timestamp"]) > cutoff_time
        ]

        error_types = {}
        for error in recent_errors:
            error_type = error["type"]
            if error_type not in error_types:
                error_types[error_type] = {"count": 0, "examples": []}

            error_types[error_type]["count"] += 1
            if len(error_types[error_type]["examples"]) < 3:
                error_types[error_type]["examples"].append({
                    "message": error["message"],
                    "timestamp": error["timestamp"],
                    "context": error["context"]
                })

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types
        }


# Global error collector
error_collector = ErrorCollector()
