"""
Practice Payroll - Error Handling

Exception hierarchy for the payroll core:
- ConfigurationError: fatal, raised before any payroll entry is written
- PayrollStateError / NotFoundError / PayrollValidationError: caller errors
- ConsistencyError: financial figures disagree, surfaced and never auto-corrected
- TransientError: persistence failed and the transition was rolled back

Validation warnings are not exceptions; see practice_payroll.schemas.payroll.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
import logging

from sqlalchemy.exc import SQLAlchemyError

# Configure logging
logger = logging.getLogger("practice_payroll.errors")


class ErrorCode(str, Enum):
    """Standardized error codes for the payroll core"""
    
    # Configuration
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN_TAX_YEAR = "UNKNOWN_TAX_YEAR"
    TAX_YEAR_NOT_PUBLISHED = "TAX_YEAR_NOT_PUBLISHED"
    TAX_YEAR_IMMUTABLE = "TAX_YEAR_IMMUTABLE"
    MISSING_RATE_TABLE = "MISSING_RATE_TABLE"
    
    # Caller errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_TAX_PERIOD = "INVALID_TAX_PERIOD"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    CANNOT_MODIFY = "CANNOT_MODIFY"
    ALREADY_ATTACHED = "ALREADY_ATTACHED"
    
    # Consistency
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    YTD_DRIFT = "YTD_DRIFT"
    TOTALS_MISMATCH = "TOTALS_MISMATCH"
    CHAIN_INTEGRITY_VIOLATED = "CHAIN_INTEGRITY_VIOLATED"
    
    # Transient
    TRANSACTION_ERROR = "TRANSACTION_ERROR"
    VERSION_CONFLICT = "VERSION_CONFLICT"


class PayrollError(Exception):
    """Base exception for all payroll exceptions"""
    
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.field = field
        self.original_error = original_error
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a plain dictionary for operators and logs"""
        result = {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.field:
            result["field"] = self.field
        if self.details:
            result["details"] = self.details
        return result


# ============================================================================
# Configuration
# ============================================================================

class ConfigurationError(PayrollError):
    """Unknown tax year, missing rate table or a forbidden change to published config"""
    
    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIGURATION_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(code=code, message=message, details=details)
        logger.error(f"Configuration error [{code.value}]: {message}")


# ============================================================================
# Caller errors
# ============================================================================

class NotFoundError(PayrollError):
    """Referenced record does not exist"""
    
    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource} not found: {identifier}",
            details={"resource": resource, "id": str(identifier)},
        )


class PayrollStateError(PayrollError):
    """Operation not allowed in the record's current status"""
    
    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        code: ErrorCode = ErrorCode.INVALID_STATE,
    ):
        details = {"current_status": current_status} if current_status else None
        super().__init__(code=code, message=message, details=details)


class PayrollValidationError(PayrollError):
    """Input rejected, or blocking validation issues prevent a transition"""
    
    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(code=code, message=message, details=details, field=field)


# ============================================================================
# Consistency
# ============================================================================

class ConsistencyError(PayrollError):
    """Stored financial figures disagree with their ground truth"""
    
    def __init__(
        self,
        message: str,
        discrepancies: Optional[list] = None,
        code: ErrorCode = ErrorCode.DATA_INTEGRITY_ERROR,
    ):
        super().__init__(
            code=code,
            message=message,
            details={"discrepancies": discrepancies or []},
        )
        self.discrepancies = discrepancies or []
        logger.error(f"Consistency error [{code.value}]: {message}")


# ============================================================================
# Transient
# ============================================================================

class TransientError(PayrollError):
    """Persistence failed; the transition was rolled back and may be retried"""
    
    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        code: ErrorCode = ErrorCode.TRANSACTION_ERROR,
    ):
        super().__init__(code=code, message=message, original_error=original_error)
        logger.warning(f"Transient error [{code.value}]: {message}")


class ConcurrentModificationError(TransientError):
    """Another writer changed the payroll run first"""
    
    def __init__(self, message: str):
        super().__init__(message=message, code=ErrorCode.VERSION_CONFLICT)


def wrap_database_error(error: SQLAlchemyError, operation: str) -> TransientError:
    """Convert a SQLAlchemy failure into a retryable TransientError"""
    return TransientError(
        message=f"{operation} failed and was rolled back: {error.__class__.__name__}",
        original_error=error,
    )
