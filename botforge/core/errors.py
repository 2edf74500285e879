from __future__ import annotations

from typing import Any, Dict, Optional


class TradingError(Exception):
    """
    Base for every recoverable error raised by the strategy / order layer.

    `reason` is the one-line, user-visible string attached to the bot
    that caused the failure.
    """

    action = "FAILED"

    def __init__(self, reason: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.details = dict(details or {})


class ValidationError(TradingError):
    """Bad template / config / price. Bot stays armed."""

    action = "REJECTED_VALIDATION"


class AccountError(TradingError):
    """Missing or unusable exchange credentials. Order not placed."""

    action = "ACCOUNT_ERROR"


class InsufficientBalanceError(TradingError):
    """Required margin exceeds available balance. Rejected before dispatch."""

    action = "INSUFFICIENT_BALANCE"


class ConnectorError(TradingError):
    """Network / exchange rejection. Retried only by the next natural tick."""

    action = "CONNECTOR_ERROR"


class ConsistencyError(TradingError):
    """Referenced record (template) is missing. Logged and treated as no-op."""

    action = "TEMPLATE_MISSING"
