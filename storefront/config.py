"""
Storefront Centralized Configuration
====================================

Single source of truth for all configuration values.
Reads from environment variables with sensible defaults.
"""

import os
from typing import List
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class StripeConfig:
    secret_key: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)


@dataclass
class CarrierConfig:
    """eSIMAccess credentials and endpoint paths."""
    app_key: str = ""
    app_secret: str = ""
    base_url: str = "https://api.esimaccess.com"
    purchase_path: str = "/api/v1/open/esim/order"
    query_path: str = "/api/v1/open/esim/query"
    usage_path: str = "/api/v1/open/esim/usage/query"
    package_list_path: str = "/api/v1/open/package/list"

    @property
    def is_configured(self) -> bool:
        """Both halves of the credential pair are required to sign requests."""
        return bool(self.app_key and self.app_secret)


# Below this the carrier call is pointless; we return pending immediately instead.
MIN_CARRIER_DEADLINE = 0.05


@dataclass
class DeadlineConfig:
    """
    Time budget for one orchestration invocation.

    The hosting platform kills the function after platform_budget_seconds.
    The carrier call must finish (or be abandoned) with safety_margin_seconds
    left over so a well-formed pending response can still be returned.
    """
    platform_budget_seconds: float = 10.0
    safety_margin_seconds: float = 2.0
    carrier_deadline_seconds: float = 6.0
    payment_deadline_seconds: float = 3.0
    query_enabled: bool = True

    @property
    def usable_budget(self) -> float:
        return self.platform_budget_seconds - self.safety_margin_seconds

    @property
    def effective_carrier_deadline(self) -> float:
        return max(MIN_CARRIER_DEADLINE, min(self.carrier_deadline_seconds, self.usable_budget))

    @property
    def effective_payment_deadline(self) -> float:
        """Bound on the Stripe session lookup; its elapsed time comes out of the carrier leg."""
        return max(MIN_CARRIER_DEADLINE, min(self.payment_deadline_seconds, self.usable_budget))

    def validate(self) -> None:
        if self.usable_budget <= 0:
            raise ValueError(
                f"Safety margin ({self.safety_margin_seconds}s) leaves no room inside "
                f"the platform budget ({self.platform_budget_seconds}s)"
            )
        if self.carrier_deadline_seconds <= 0:
            raise ValueError("Carrier deadline must be positive")
        if self.payment_deadline_seconds <= 0:
            raise ValueError("Payment deadline must be positive")


@dataclass
class PollConfig:
    interval_seconds: float = 8.0
    max_attempts: int = 20


@dataclass
class MappingConfig:
    default_location: str = "US"
    default_package: str = "US_5GB_30D"
    extra_map_path: str = ""


@dataclass
class StorefrontConfig:
    """Master configuration for the storefront API."""

    # Sub-configs
    stripe: StripeConfig = field(default_factory=StripeConfig)
    carrier: CarrierConfig = field(default_factory=CarrierConfig)
    deadlines: DeadlineConfig = field(default_factory=DeadlineConfig)
    poll: PollConfig = field(default_factory=PollConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)

    # Application settings
    app_url: str = "http://localhost:5173"
    order_store_path: str = ""
    webhook_secret: str = ""
    log_level: str = "INFO"
    log_format: str = "json"
    cors_origins: List[str] = field(
        default_factory=lambda: ["http://localhost:5173"]
    )

    def secret_values(self) -> List[str]:
        """Configured credentials that must never appear in log output."""
        values = [
            self.stripe.secret_key,
            self.carrier.app_key,
            self.carrier.app_secret,
            self.webhook_secret,
        ]
        return [value for value in values if value]

    @classmethod
    def from_env(cls) -> "StorefrontConfig":
        """Load configuration from environment variables."""
        config = cls(
            stripe=StripeConfig(
                secret_key=os.environ.get("STRIPE_SECRET_KEY", ""),
            ),
            carrier=CarrierConfig(
                app_key=os.environ.get("ESIM_ACCESS_APP_KEY", ""),
                app_secret=os.environ.get("ESIM_ACCESS_APP_SECRET", ""),
                base_url=os.environ.get("ESIM_ACCESS_BASE_URL", "https://api.esimaccess.com").rstrip("/"),
            ),
            deadlines=DeadlineConfig(
                platform_budget_seconds=float(os.environ.get("PLATFORM_BUDGET_SECONDS", "10")),
                safety_margin_seconds=float(os.environ.get("DEADLINE_SAFETY_MARGIN_SECONDS", "2")),
                carrier_deadline_seconds=float(os.environ.get("CARRIER_DEADLINE_SECONDS", "6")),
                payment_deadline_seconds=float(os.environ.get("PAYMENT_DEADLINE_SECONDS", "3")),
                query_enabled=_env_bool("CARRIER_QUERY_ENABLED", True),
            ),
            poll=PollConfig(
                interval_seconds=float(os.environ.get("POLL_INTERVAL_SECONDS", "8")),
                max_attempts=int(os.environ.get("POLL_MAX_ATTEMPTS", "20")),
            ),
            mapping=MappingConfig(
                default_location=os.environ.get("DEFAULT_LOCATION_CODE", "US"),
                default_package=os.environ.get("DEFAULT_PACKAGE_CODE", "US_5GB_30D"),
                extra_map_path=os.environ.get("PACKAGE_MAP_PATH", ""),
            ),
            app_url=os.environ.get("APP_URL", "http://localhost:5173").rstrip("/"),
            order_store_path=os.environ.get("ORDER_STORE_PATH", ""),
            webhook_secret=os.environ.get("CARRIER_WEBHOOK_SECRET", ""),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            log_format=os.environ.get("LOG_FORMAT", "json"),
            cors_origins=[
                origin.strip()
                for origin in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",")
                if origin.strip()
            ],
        )
        config.deadlines.validate()
        return config
