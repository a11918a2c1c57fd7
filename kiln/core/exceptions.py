"""
Kiln Storefront Exception Hierarchy

Structured exception classes for the stock ledger, checkout and settlement
paths. All exceptions include code, message, and details for logging, and an
HTTP status used by the API exception handler.

Exception Hierarchy:
    KilnBaseError
    ├── StoreError
    │   ├── StoreUnavailableError
    │   └── StockSyncLockedError
    ├── InventoryError
    │   ├── StockError
    │   └── BackorderConfirmationRequired
    ├── PaymentError
    │   ├── PaymentSessionError
    │   └── WebhookSignatureError
    └── CMSError
        ├── CMSConfigurationError
        └── CMSOrderError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class KilnBaseError(Exception):
    """
    Base exception for all Kiln storefront errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging
        severity: P0-P3 severity level
        status_code: HTTP status used when the error reaches the API layer
    """

    default_code: str = "KILN_ERROR"
    default_severity: str = "P2"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# ATOMIC STORE ERRORS
# =============================================================================

class StoreError(KilnBaseError):
    """Base exception for Redis-side failures."""
    default_code = "STORE_ERROR"
    default_severity = "P1"


class StoreUnavailableError(StoreError):
    """Redis is not configured or could not be reached. Caller should retry."""
    default_code = "STORE_UNAVAILABLE"
    default_severity = "P0"
    status_code = 503


# =============================================================================
# INVENTORY ERRORS
# =============================================================================

class InventoryError(KilnBaseError):
    """Base exception for inventory-related errors."""
    default_code = "INVENTORY_ERROR"
    default_severity = "P1"


class StockError(InventoryError):
    """Invalid ledger mutation (negative quantity, unknown slug)."""
    default_code = "STOCK_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        slug: Optional[str] = None,
        requested_qty: Optional[int] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "slug": slug,
            "requested_qty": requested_qty,
        })
        super().__init__(message, details=details, **kwargs)


class BackorderConfirmationRequired(InventoryError):
    """Some items exceed available stock and the caller has not accepted a backorder."""
    default_code = "BACKORDER_CONFIRMATION_REQUIRED"
    default_severity = "P3"
    status_code = 409

    def __init__(self, message: str, backorder_by_slug: Dict[str, int], **kwargs):
        self.backorder_by_slug = dict(backorder_by_slug)
        details = kwargs.pop("details", {})
        details["backorder_by_slug"] = self.backorder_by_slug
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# PAYMENT ERRORS
# =============================================================================

class PaymentError(KilnBaseError):
    """Base exception for payment processing errors."""
    default_code = "PAYMENT_ERROR"
    default_severity = "P0"


class PaymentSessionError(PaymentError):
    """Stripe refused or failed to create the payment attempt."""
    default_code = "PAYMENT_SESSION_FAILED"
    status_code = 502


class WebhookSignatureError(PaymentError):
    """Webhook payload failed signature verification."""
    default_code = "WEBHOOK_SIGNATURE_INVALID"
    default_severity = "P1"
    status_code = 400


# =============================================================================
# CMS ERRORS
# =============================================================================

class CMSError(KilnBaseError):
    """Base exception for Storyblok errors."""
    default_code = "CMS_ERROR"
    default_severity = "P2"
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["upstream_status"] = status
        super().__init__(message, details=details, **kwargs)


class CMSConfigurationError(CMSError):
    """Storyblok tokens or folder ids are missing."""
    default_code = "CMS_NOT_CONFIGURED"
    default_severity = "P1"
    status_code = 500


class CMSOrderError(CMSError):
    """Order record could not be written after a successful payment."""
    default_code = "CMS_ORDER_FAILED"
    default_severity = "P1"


class StockSyncLockedError(StoreError):
    """Another admin stock sync is still holding the lock."""
    default_code = "STOCK_SYNC_RUNNING"
    default_severity = "P3"
    status_code = 409
