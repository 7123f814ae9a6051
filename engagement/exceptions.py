"""
Standardized exception hierarchy for the engagement engine
Provides rich context, consistent logging, and user-friendly error messages

Every error raised by a public operation is side-effect free: the unit of
work that raised it has been rolled back before the caller sees it.
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from uuid import uuid4
import logging

import psycopg
import psycopg_pool

logger = logging.getLogger(__name__)


class EngagementError(Exception):
    """
    Base exception for all engagement engine errors

    Provides:
    - Automatic timestamping
    - Request ID for tracing
    - User-friendly messages
    - Structured context
    - Automatic logging

    Example:
        raise EngagementError(
            message="Failed to post transaction",
            user_id="u1",
            operation="post_transaction",
            context={"amount": 50}
        )
    """

    log_level = logging.ERROR

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        request_id: Optional[str] = None,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.user_id = user_id
        self.request_id = request_id or str(uuid4())
        self.operation = operation
        self.context = context or {}
        self.cause = cause
        self.user_message = user_message or "An error occurred. Please try again."
        self.timestamp = datetime.now(timezone.utc)

        # Auto-log on creation
        self._log_error()

    def _log_error(self) -> None:
        """Log error with full context"""
        log_data = {
            "error_type": self.__class__.__name__,
            "error_message": self.message,  # Avoid conflict with logging's 'message' field
            "request_id": self.request_id,
            "user_id": self.user_id,
            "operation": self.operation,
            "error_context": self.context,
            "timestamp": self.timestamp.isoformat()
        }

        if self.cause:
            log_data["cause"] = str(self.cause)
            logger.log(
                self.log_level, f"{self.__class__.__name__}: {self.message}",
                extra=log_data, exc_info=self.cause
            )
        else:
            logger.log(self.log_level, f"{self.__class__.__name__}: {self.message}", extra=log_data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for API responses"""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "user_message": self.user_message,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat()
        }


class BusinessRuleError(EngagementError):
    """
    Base class for expected, caller-facing rejections

    These are local conditions (not enough points, reward sold out) and
    are logged at WARNING rather than ERROR.
    """

    log_level = logging.WARNING


# ==========================================
# Validation Errors (Caller Input)
# ==========================================

class ValidationError(BusinessRuleError):
    """
    Raised when caller input fails validation

    Examples:
    - Negative or zero point amount
    - Unknown activity type or transaction category
    - Mood rating outside 1..10

    Example:
        raise ValidationError(
            message="Amount must be a positive integer",
            field="amount",
            value=-5,
            user_id="u1"
        )
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        **kwargs
    ):
        self.field = field
        self.value = value
        super().__init__(
            message=message,
            user_message=f"Invalid {field}: {message}" if field else message,
            context={"field": field, "value": value},
            **kwargs
        )


class InvalidInputError(ValidationError):
    """Negative amounts, unknown activity types or categories, malformed payloads"""
    pass


# ==========================================
# Accounts & Balances
# ==========================================

class AccountNotFoundError(BusinessRuleError):
    """No account exists for the user"""

    def __init__(self, user_id: str, **kwargs):
        super().__init__(
            message=f"Account {user_id} not found",
            user_id=user_id,
            user_message="We couldn't find your rewards account.",
            context={"record_type": "account", "record_id": user_id},
            **kwargs
        )


class InsufficientBalanceError(BusinessRuleError):
    """Spend exceeds the user's available points"""

    def __init__(self, user_id: str, required: int, available: int, **kwargs):
        self.required = required
        self.available = available
        super().__init__(
            message=f"Insufficient balance: {required} required, {available} available",
            user_id=user_id,
            user_message=f"You need {required} points but only have {available}.",
            context={"required": required, "available": available},
            **kwargs
        )


# ==========================================
# Rewards & Redemption
# ==========================================

class IneligibleForRewardError(BusinessRuleError):
    """User does not meet a reward's level or achievement requirements"""

    def __init__(self, user_id: str, reward_id: str, missing: List[str], **kwargs):
        self.reward_id = reward_id
        self.missing = missing
        super().__init__(
            message=f"User {user_id} is not eligible for reward {reward_id}: {', '.join(missing)}",
            user_id=user_id,
            user_message="You haven't unlocked this reward yet.",
            context={"reward_id": reward_id, "missing": missing},
            **kwargs
        )


class RewardUnavailableError(BusinessRuleError):
    """Reward is unknown, inactive, out of season or out of stock"""

    def __init__(self, reward_id: str, reason: str, **kwargs):
        self.reward_id = reward_id
        self.reason = reason
        super().__init__(
            message=f"Reward {reward_id} unavailable: {reason}",
            user_message="This reward is not available right now.",
            context={"reward_id": reward_id, "reason": reason},
            **kwargs
        )


class TokenInvalidError(BusinessRuleError):
    """Redemption token cannot be used"""

    def __init__(self, reason: str, token_id: Optional[str] = None, **kwargs):
        self.reason = reason
        self.token_id = token_id
        super().__init__(
            message=f"Redemption token invalid: {reason}",
            user_message=reason,
            context={"token_id": token_id},
            **kwargs
        )


# ==========================================
# Storage Errors
# ==========================================

class StorageError(EngagementError):
    """
    Base class for persistence-layer errors
    """
    pass


class TransientStorageError(StorageError):
    """
    Persistence call failed; the whole logical operation was rolled back
    and may be retried by the caller
    """

    def __init__(self, message: str = "Storage operation failed", **kwargs):
        super().__init__(
            message=message,
            user_message="We're having trouble saving your progress. Please try again in a moment.",
            **kwargs
        )


# ==========================================
# Configuration Errors
# ==========================================

class ConfigurationError(EngagementError):
    """System configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        self.config_key = config_key
        super().__init__(
            message=message,
            user_message="The system is not properly configured. Please contact support.",
            context={"config_key": config_key},
            **kwargs
        )


# ==========================================
# Helper Functions
# ==========================================

def wrap_storage_exception(
    error: Exception,
    operation: str,
    user_id: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None
) -> EngagementError:
    """
    Wrap persistence exceptions (psycopg, pool timeouts) into our hierarchy

    Args:
        error: Original exception
        operation: What operation was being performed
        user_id: User ID if applicable
        context: Additional context

    Returns:
        TransientStorageError for database and pool failures,
        EngagementError for anything else

    Example:
        try:
            await cur.execute(query)
        except psycopg.Error as e:
            raise wrap_storage_exception(e, operation="post_transaction", user_id="u1")
    """
    if isinstance(error, psycopg.Error):
        return TransientStorageError(
            message=f"Database operation failed: {error}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
    if isinstance(error, psycopg_pool.PoolTimeout):
        return TransientStorageError(
            message=f"Timed out waiting for a database connection: {error}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )
    if isinstance(error, TimeoutError):
        return TransientStorageError(
            message=f"Storage call timed out during {operation}",
            user_id=user_id,
            operation=operation,
            context=context,
            cause=error
        )

    return EngagementError(
        message=f"{operation} failed: {error}",
        user_id=user_id,
        operation=operation,
        context=context,
        cause=error
    )
