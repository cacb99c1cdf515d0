"""
Append-only security and audit log.

Every fraud decision, signature failure and state transition is emitted
here. Writes use their own session so they never join (or break) the
caller's transaction, and a failed write is only logged.
"""
import uuid
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.database.models import SecurityEvent

logger = structlog.get_logger(__name__)


class SecurityLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SecurityCategory(str, Enum):
    PAYMENT = "payment"
    SIGNATURE = "signature"
    INTEGRITY = "integrity"
    FRAUD = "fraud"
    INVENTORY = "inventory"
    ADMIN = "admin"
    WEBHOOK = "webhook"


_LOG_METHODS = {
    SecurityLevel.INFO: "info",
    SecurityLevel.WARNING: "warning",
    SecurityLevel.ERROR: "error",
    SecurityLevel.CRITICAL: "critical",
}


class SecurityLogger:
    """Fire-and-forget writer for security events."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def log(
        self,
        level: SecurityLevel,
        category: SecurityCategory,
        event: str,
        message: str,
        order_id: Optional[uuid.UUID] = None,
        payment_id: Optional[uuid.UUID] = None,
        ip_address: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Emit a security event to structured logs and the audit table.

        Never raises: a failure to persist is reported as a warning.
        """
        log_method = getattr(logger, _LOG_METHODS[level])
        log_method(
            event,
            category=category.value,
            security_message=message,
            order_id=str(order_id) if order_id else None,
            payment_id=str(payment_id) if payment_id else None,
            ip_address=ip_address,
            details=details,
        )

        try:
            async with self.session_factory() as session:
                session.add(
                    SecurityEvent(
                        level=level.value,
                        category=category.value,
                        event=event,
                        message=message,
                        order_id=order_id,
                        payment_id=payment_id,
                        ip_address=ip_address,
                        details=details,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.warning("security_log_write_failed", security_event=event, error=str(e))

    async def info(self, category: SecurityCategory, event: str, message: str, **fields: Any) -> None:
        await self.log(SecurityLevel.INFO, category, event, message, **fields)

    async def warning(
        self, category: SecurityCategory, event: str, message: str, **fields: Any
    ) -> None:
        await self.log(SecurityLevel.WARNING, category, event, message, **fields)

    async def error(self, category: SecurityCategory, event: str, message: str, **fields: Any) -> None:
        await self.log(SecurityLevel.ERROR, category, event, message, **fields)

    async def critical(
        self, category: SecurityCategory, event: str, message: str, **fields: Any
    ) -> None:
        await self.log(SecurityLevel.CRITICAL, category, event, message, **fields)
