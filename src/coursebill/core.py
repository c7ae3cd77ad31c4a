"""Core configuration, logging, and exceptions."""

import logging
import sys
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CourseBillException(Exception):
    """Base exception for CourseBill."""

    status_code: int = 500

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        details: Optional[dict] = None,
        status_code: Optional[int] = None,
    ):
        """
        Initialize CourseBillException.

        Args:
            code: Error code
            message: Error message
            details: Additional error details
            status_code: HTTP status the API layer should answer with
        """
        self.code = code
        self.message = message or "An error occurred"
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        """Convert exception to dictionary format."""
        return {
            "error": self.code or "UNKNOWN_ERROR",
            "message": self.message,
            "details": self.details,
        }


class _CodedException(CourseBillException):
    """Exception with a fixed error code."""

    default_code = "UNKNOWN_ERROR"
    default_message = "An error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(
            code=self.default_code,
            message=message or self.default_message,
            details=details,
        )


# ============ Ledger lookups ============


class OrderNotFound(_CodedException):
    default_code = "ORDER_NOT_FOUND"
    default_message = "Order not found"
    status_code = 404


class SubscriptionNotFound(_CodedException):
    default_code = "SUBSCRIPTION_NOT_FOUND"
    default_message = "Subscription not found"
    status_code = 404


class CustomerNotFound(_CodedException):
    default_code = "CUSTOMER_NOT_FOUND"
    default_message = "Customer not found"
    status_code = 404


class PlanNotFound(_CodedException):
    default_code = "PLAN_NOT_FOUND"
    default_message = "Subscription plan not found"
    status_code = 404


class ProductNotFound(_CodedException):
    default_code = "PRODUCT_NOT_FOUND"
    default_message = "Product not found"
    status_code = 404


# ============ Command preconditions ============


class OrderNotRefundable(_CodedException):
    default_code = "ORDER_NOT_REFUNDABLE"
    default_message = "Order cannot be refunded"
    status_code = 400


class SubscriptionNotCancellable(_CodedException):
    default_code = "SUBSCRIPTION_NOT_CANCELLABLE"
    default_message = "Subscription cannot be canceled"
    status_code = 400


class InvalidRequest(_CodedException):
    default_code = "VALIDATION_ERROR"
    default_message = "Invalid request"
    status_code = 400


class RefundValidationError(InvalidRequest):
    default_message = "Invalid refund request"


class AlreadyPurchased(_CodedException):
    default_code = "ALREADY_PURCHASED"
    default_message = "Customer already has access to this product"
    status_code = 409


# ============ Payment gateway failures ============


class StripeNotConfigured(_CodedException):
    default_code = "STRIPE_NOT_CONFIGURED"
    default_message = "Stripe secret key not configured"
    status_code = 503


class StripeAPIError(_CodedException):
    default_code = "STRIPE_API_ERROR"
    default_message = "Stripe API error"
    status_code = 502

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[dict] = None,
        remote_status: Optional[int] = None,
    ):
        super().__init__(message=message, details=details)
        self.remote_status = remote_status


class WebhookSignatureInvalid(_CodedException):
    default_code = "INVALID_SIGNATURE"
    default_message = "Webhook signature verification failed"
    status_code = 400


class RefundFailed(_CodedException):
    default_code = "REFUND_FAILED"
    default_message = "Refund could not be created at the payment provider"
    status_code = 502


class SubscriptionCancelFailed(_CodedException):
    default_code = "SUBSCRIPTION_CANCEL_FAILED"
    default_message = "Subscription could not be canceled at the payment provider"
    status_code = 502


class StripeSyncFailed(_CodedException):
    default_code = "STRIPE_SYNC_FAILED"
    default_message = "Failed to sync with Stripe"
    status_code = 502


class CheckoutFailed(_CodedException):
    default_code = "CHECKOUT_FAILED"
    default_message = "Failed to create checkout session"
    status_code = 502


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COURSEBILL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_version: str = Field(default="0.1.0")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_origins: list[str] = Field(default=["*"])

    # API Server
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000)
    api_reload: bool = Field(default=True)

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    # Database
    database_url: str = Field(default="postgresql+asyncpg://localhost/coursebill")
    database_pool_size: int = Field(default=10)
    database_max_overflow: int = Field(default=20)

    @property
    def is_sqlite(self) -> bool:
        """Check if the ledger lives in SQLite (local development and tests)."""
        return self.database_url.startswith("sqlite")

    # Stripe
    stripe_secret_key: Optional[str] = Field(default=None)  # sk_test_... / sk_live_...
    stripe_webhook_secret: Optional[str] = Field(default=None)  # whsec_...
    stripe_api_base: str = Field(default="https://api.stripe.com")
    stripe_api_version: Optional[str] = Field(default=None)  # pin an API version header
    stripe_timeout_seconds: float = Field(default=30.0)
    stripe_webhook_tolerance_seconds: int = Field(default=300)

    # Checkout
    frontend_url: str = Field(default="http://localhost:3000")
    mobile_callback_url: str = Field(default="coursebill://checkout")
    default_currency: str = Field(default="usd")
    order_number_prefix: str = Field(default="CB")

    # Principal tokens issued by the identity layer
    jwt_secret_key: str = Field(default="change-me-in-production")
    jwt_algorithm: str = Field(default="HS256")
    admin_roles: list[str] = Field(default=["admin", "super_admin"])


# Global settings instance
settings = Settings()


def setup_logging(level: Optional[str] = None) -> None:
    """
    Setup logging configuration.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level = level or settings.log_level

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # SQL echo is noisy at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


class StructuredLogger:
    """Logger wrapper that accepts keyword context."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _format_message(self, msg: str, **kwargs) -> str:
        """Render keyword context as `msg | k=v k=v`."""
        if kwargs:
            context = " ".join(f"{k}={v}" for k, v in kwargs.items())
            return f"{msg} | {context}"
        return msg

    def debug(self, msg: str, **kwargs) -> None:
        self._logger.debug(self._format_message(msg, **kwargs))

    def info(self, msg: str, **kwargs) -> None:
        self._logger.info(self._format_message(msg, **kwargs))

    def warning(self, msg: str, **kwargs) -> None:
        self._logger.warning(self._format_message(msg, **kwargs))

    def error(self, msg: str, **kwargs) -> None:
        self._logger.error(self._format_message(msg, **kwargs))

    def exception(self, msg: str, **kwargs) -> None:
        self._logger.exception(self._format_message(msg, **kwargs))


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        StructuredLogger instance
    """
    return StructuredLogger(logging.getLogger(name))
