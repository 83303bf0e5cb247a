"""Audit logging for ledger events with rotation and structured output.

This module extends the basic logging with ledger-specific event logging:
every executed order, revocation, dividend, allocation change and capital
movement is written as one JSON line to a rotating file, so the history of
a portfolio can be reconstructed independently of the persisted snapshot.
"""

import json
import logging
import logging.handlers
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class LedgerEventType(Enum):
    """Types of ledger events to log."""

    # Order events
    ORDER_EXECUTED = "order_executed"
    ORDER_REJECTED = "order_rejected"
    TRANSACTION_REVOKED = "transaction_revoked"
    DIVIDEND_RECORDED = "dividend_recorded"

    # Capital and allocation events
    CAPITAL_DEPOSITED = "capital_deposited"
    CAPITAL_WITHDRAWN = "capital_withdrawn"
    CAPITAL_LOG_REMOVED = "capital_log_removed"
    ALLOCATION_CHANGED = "allocation_changed"

    # Oracle events
    PRICES_REFRESHED = "prices_refreshed"

    # Snapshot events
    SNAPSHOT_IMPORTED = "snapshot_imported"
    SNAPSHOT_EXPORTED = "snapshot_exported"
    POSITIONS_REBUILT = "positions_rebuilt"

    # Error events
    LEDGER_ERROR = "ledger_error"
    IMPORT_ERROR = "import_error"


class LedgerEventLogger:
    """Audit logger for ledger events with rotation and JSON lines.

    Features:
    - Automatic log rotation with size limits
    - One JSON object per line for later analysis
    - Separate files for orders, capital, oracle and errors

    Example:
        >>> audit = LedgerEventLogger(log_dir="logs")
        >>> audit.log_order_event(
        ...     LedgerEventType.ORDER_EXECUTED,
        ...     symbol="2330",
        ...     action="BUY",
        ...     shares=1000,
        ...     price=580.0,
        ...     transaction_id="c0ffee",
        ... )
    """

    def __init__(
        self,
        log_dir: str | Path = "logs",
        max_bytes: int = 5 * 1024 * 1024,  # 5 MB
        backup_count: int = 10,
        enable_console: bool = False,
    ):
        """Initialize the ledger audit logger.

        Args:
            log_dir: Directory for log files
            max_bytes: Maximum size per log file (default 5 MB)
            backup_count: Number of rotated files to keep (default 10)
            enable_console: Also echo events to the console (default False)
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.enable_console = enable_console

        self.order_logger = self._create_rotating_logger("orders")
        self.capital_logger = self._create_rotating_logger("capital")
        self.oracle_logger = self._create_rotating_logger("oracle")
        self.error_logger = self._create_rotating_logger("errors", level=logging.ERROR)

    def _create_rotating_logger(
        self,
        name: str,
        level: int = logging.INFO,
    ) -> logging.Logger:
        """Create a rotating file logger.

        Loggers are namespaced by log directory so two audit loggers
        pointed at different directories never share handlers.

        Args:
            name: Logger name and file prefix
            level: Logging level

        Returns:
            Configured logger
        """
        logger = logging.getLogger(f"ledger.{self.log_dir.resolve()}.{name}")
        logger.setLevel(level)
        logger.propagate = False

        for handler in list(logger.handlers):
            handler.close()
        logger.handlers = []

        file_handler = logging.handlers.RotatingFileHandler(
            filename=self.log_dir / f"{name}.log",
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(file_handler)

        if self.enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(level)
            console_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
            logger.addHandler(console_handler)

        return logger

    def _log_structured_event(
        self,
        logger: logging.Logger,
        event_type: LedgerEventType,
        level: str = "info",
        **data: Any,
    ) -> None:
        """Log a structured event as one JSON line.

        Args:
            logger: Logger instance to use
            event_type: Type of ledger event
            level: Log level (default: info)
            **data: Event data fields
        """
        event = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.upper(),
            **data,
        }

        log_func = getattr(logger, level)
        log_func(json.dumps(event, ensure_ascii=False, default=str))

    def log_order_event(
        self,
        event_type: LedgerEventType,
        symbol: str,
        action: str,
        shares: float,
        price: Optional[float] = None,
        transaction_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        """Log an order, revocation or dividend event.

        Args:
            event_type: Type of order event
            symbol: Instrument symbol
            action: BUY, SELL or DIVIDEND
            shares: Number of shares
            price: Order price in native currency (optional)
            transaction_id: Resulting transaction id (optional)
            **extra: Additional event data
        """
        data = {
            "symbol": symbol,
            "action": action,
            "shares": shares,
        }

        if price is not None:
            data["price"] = price
        if transaction_id is not None:
            data["transaction_id"] = transaction_id

        data.update(extra)

        self._log_structured_event(self.order_logger, event_type, **data)

    def log_capital_event(
        self,
        event_type: LedgerEventType,
        total_capital: float,
        **extra: Any,
    ) -> None:
        """Log a capital or allocation change.

        Args:
            event_type: Type of capital event
            total_capital: Total capital after the change
            **extra: Additional event data
        """
        data = {"total_capital": total_capital}
        data.update(extra)

        self._log_structured_event(self.capital_logger, event_type, **data)

    def log_oracle_event(
        self,
        event_type: LedgerEventType,
        requested: int,
        resolved: int,
        **extra: Any,
    ) -> None:
        """Log a batch price refresh.

        Args:
            event_type: Type of oracle event
            requested: Number of unique instruments requested
            resolved: Number of instruments that resolved to a price
            **extra: Additional event data
        """
        data = {
            "requested": requested,
            "resolved": resolved,
        }
        data.update(extra)

        self._log_structured_event(self.oracle_logger, event_type, **data)

    def log_error(
        self,
        event_type: LedgerEventType,
        error: str,
        **extra: Any,
    ) -> None:
        """Log an error event.

        Args:
            event_type: Type of error event
            error: Error message or description
            **extra: Additional event data
        """
        data = {
            "error": error,
        }

        data.update(extra)

        self._log_structured_event(self.error_logger, event_type, level="error", **data)

    def close(self) -> None:
        """Close all file handlers."""
        for logger in (
            self.order_logger,
            self.capital_logger,
            self.oracle_logger,
            self.error_logger,
        ):
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)
