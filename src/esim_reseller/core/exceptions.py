from decimal import Decimal


class ResellerException(Exception):
    """Base exception for all reseller core errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InsufficientFundsError(ResellerException):
    """Wallet balance is lower than the requested debit."""

    status_code = 402
    error_code = "INSUFFICIENT_FUNDS"

    def __init__(self, balance: Decimal, required: Decimal):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient funds: balance {balance}, required {required}")


class WalletContentionError(ResellerException):
    """Concurrent wallet mutations kept invalidating the compare-and-swap."""

    status_code = 409
    error_code = "wallet_contention"


class SupplierHTTPError(ResellerException):
    """Raw transport or HTTP error from a supplier, classified by the adapter."""

    status_code = 502
    error_code = "supplier_http_error"

    def __init__(
        self,
        message: str,
        supplier: str,
        http_status: int | None = None,
        body: object | None = None,
        transient: bool = False,
    ):
        self.supplier = supplier
        self.http_status = http_status
        self.body = body
        self.transient = transient
        super().__init__(message)


class SupplierPendingError(ResellerException):
    """Supplier has not provisioned yet; retry later, do not refund."""

    status_code = 202
    error_code = "supplier_pending"


class SupplierFailedError(ResellerException):
    """Supplier definitively failed to provision."""

    status_code = 502
    error_code = "supplier_failed"


class UpstreamAuthError(ResellerException):
    """Supplier or payment provider rejected our credentials."""

    status_code = 502
    error_code = "upstream_auth_error"

    def __init__(self, message: str, upstream: str):
        self.upstream = upstream
        super().__init__(message)


class ValidationException(ResellerException):
    """Request validation failed before any side effect."""

    status_code = 400
    error_code = "validation_error"


class PaymentVerificationError(ResellerException):
    """Payment could not be verified with the payment provider."""

    status_code = 400
    error_code = "payment_verification_failed"


class AgentNotFoundException(ResellerException):
    """Agent not found."""

    status_code = 404
    error_code = "agent_not_found"


class AgentNotApprovedException(ResellerException):
    """Agent exists but is not approved to purchase."""

    status_code = 403
    error_code = "agent_not_approved"


class PlanNotFoundException(ResellerException):
    """Plan not found or inactive."""

    status_code = 404
    error_code = "plan_not_found"


class OrderNotFoundException(ResellerException):
    """Order not found."""

    status_code = 404
    error_code = "order_not_found"


class SupplierNotFoundException(ResellerException):
    """Supplier not configured."""

    status_code = 400
    error_code = "supplier_not_found"


class AgentPricingNotFoundException(ResellerException):
    """Agent pricing override not found."""

    status_code = 404
    error_code = "agent_pricing_not_found"
