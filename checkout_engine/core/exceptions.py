"""
Checkout Engine Exception Hierarchy

All exceptions include code, message, and details for the audit trail and
for structured API responses.

Exception Hierarchy:
    CheckoutEngineError
    ├── CheckoutValidationError          (recoverable by the caller)
    │   ├── EmptyCartError
    │   ├── ProductNotFoundError
    │   ├── InsufficientStockError
    │   ├── SellersNotPayableError
    │   ├── DeliveryCoordinatesRequiredError
    │   ├── DeliveryModeNotSupportedError
    │   ├── DeliveryUnavailableError
    │   ├── CheckoutMetadataTooLargeError
    │   ├── InvalidItemIdentifierError
    │   └── OrderTotalTooLowError
    └── CheckoutInfrastructureError      (surfaced as a generic failure)
        ├── GatewaySessionFailedError
        └── DeliveryAvailabilityError
"""
import logging
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class CheckoutEngineError(Exception):
    """
    Base exception for all checkout engine errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        status_code: HTTP status the API layer maps this error to
    """

    default_code: str = "CHECKOUT_ERROR"
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
# VALIDATION ERRORS
# =============================================================================

class CheckoutValidationError(CheckoutEngineError):
    """Base for errors the buyer can fix (adjust cart, wait, choose pickup)."""
    default_code = "CHECKOUT_INVALID"
    default_severity = "P3"
    status_code = 400


class EmptyCartError(CheckoutValidationError):
    default_code = "EMPTY_CART"


class ProductNotFoundError(CheckoutValidationError):
    """One or more cart products do not exist."""
    default_code = "PRODUCT_NOT_FOUND"
    status_code = 404

    def __init__(self, product_ids: List[str], **kwargs):
        details = kwargs.pop("details", {})
        details["product_ids"] = list(product_ids)
        super().__init__(
            f"Products not found: {', '.join(product_ids)}",
            details=details,
            **kwargs,
        )


class InsufficientStockError(CheckoutValidationError):
    """Every cart line that cannot be reserved, never just the first one."""
    default_code = "INSUFFICIENT_STOCK"
    status_code = 409

    def __init__(self, violations: List[Dict[str, Any]], **kwargs):
        details = kwargs.pop("details", {})
        details["insufficient_stock"] = list(violations)
        super().__init__(
            "Insufficient stock to place this order.",
            details=details,
            **kwargs,
        )

    @property
    def violations(self) -> List[Dict[str, Any]]:
        return self.details["insufficient_stock"]


class SellersNotPayableError(CheckoutValidationError):
    """Sellers in the cart have no payout account configured with the gateway."""
    default_code = "SELLERS_NOT_PAYABLE"

    def __init__(self, sellers: List[Dict[str, Any]], **kwargs):
        details = kwargs.pop("details", {})
        details["sellers"] = list(sellers)
        names = ", ".join(s.get("name") or s.get("id") or "unknown" for s in sellers)
        super().__init__(
            f"The following sellers have not set up payouts yet: {names}",
            details=details,
            **kwargs,
        )


class DeliveryCoordinatesRequiredError(CheckoutValidationError):
    default_code = "DELIVERY_COORDINATES_REQUIRED"

    def __init__(self, delivery_mode: str, **kwargs):
        super().__init__(
            f"Delivery coordinates are required for delivery mode {delivery_mode}",
            details={"delivery_mode": delivery_mode},
            **kwargs,
        )


class DeliveryModeNotSupportedError(CheckoutValidationError):
    """Some products cannot be fulfilled with the selected delivery mode."""
    default_code = "DELIVERY_MODE_NOT_SUPPORTED"

    def __init__(self, delivery_mode: str, product_titles: List[str], **kwargs):
        super().__init__(
            f"Delivery mode {delivery_mode} is not available for: {', '.join(product_titles)}",
            details={"delivery_mode": delivery_mode, "products": list(product_titles)},
            **kwargs,
        )


class DeliveryUnavailableError(CheckoutValidationError):
    """Delivery availability service explicitly reported no courier capacity."""
    default_code = "DELIVERY_UNAVAILABLE"

    def __init__(self, message: Optional[str] = None, **kwargs):
        super().__init__(
            message or "Delivery is currently not available in your area. Try again later or choose pickup.",
            **kwargs,
        )


class CheckoutMetadataTooLargeError(CheckoutValidationError):
    """Cart cannot be encoded within the gateway metadata limits."""
    default_code = "CHECKOUT_METADATA_TOO_LARGE"


class InvalidItemIdentifierError(CheckoutValidationError):
    """A product or seller id contains a character reserved by the compact item encoding."""
    default_code = "INVALID_ITEM_IDENTIFIER"

    def __init__(self, field: str, value: str, **kwargs):
        super().__init__(
            f"Cart item {field} {value!r} cannot be stored in checkout metadata",
            details={"field": field, "value": value},
            **kwargs,
        )


class OrderTotalTooLowError(CheckoutValidationError):
    default_code = "ORDER_TOTAL_TOO_LOW"

    def __init__(self, total_cents: int, minimum_cents: int, **kwargs):
        super().__init__(
            f"Order total must be at least {minimum_cents} cents",
            details={"total_cents": total_cents, "minimum_cents": minimum_cents},
            **kwargs,
        )


# =============================================================================
# INFRASTRUCTURE ERRORS
# =============================================================================

class CheckoutInfrastructureError(CheckoutEngineError):
    """Base for collaborator failures (store, gateway, availability service)."""
    default_code = "CHECKOUT_INFRASTRUCTURE_ERROR"
    default_severity = "P1"
    status_code = 500


class GatewaySessionFailedError(CheckoutInfrastructureError):
    """Payment gateway refused or failed to create the hosted session."""
    default_code = "GATEWAY_SESSION_FAILED"
    default_severity = "P0"  # Payment errors are always critical
    status_code = 502

    def __init__(
        self,
        message: str,
        payment_session_id: Optional[str] = None,
        gateway_error_code: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "payment_session_id": payment_session_id,
            "gateway_error_code": gateway_error_code,
        })
        super().__init__(message, details=details, **kwargs)


class DeliveryAvailabilityError(CheckoutInfrastructureError):
    """Delivery availability service could not be reached or answered garbage."""
    default_code = "DELIVERY_AVAILABILITY_FAILED"
    default_severity = "P2"
    status_code = 502
