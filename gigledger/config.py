"""Configuration for the gigledger engine.

Values come from constructor arguments or, via ``LedgerConfig.from_env()``,
from ``GIGLEDGER_*`` and ``STRIPE_*`` environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional


def get_data_dir() -> Path:
    """Directory for the ledger database and logs (``GIGLEDGER_DATA_DIR``)."""
    raw = os.environ.get("GIGLEDGER_DATA_DIR")
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".gigledger"


@dataclass
class LedgerConfig:
    """Engine configuration."""

    db_path: Path = field(default_factory=lambda: get_data_dir() / "ledger.db")
    currency: str = "usd"
    # Allowed drift between a contract amount and the sum of its milestones
    amount_tolerance: Decimal = Decimal("0.01")

    # Gateway behaviour
    gateway_timeout_seconds: float = 30.0
    gateway_max_retries: int = 3
    gateway_backoff_seconds: float = 0.5

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    log_level: str = "INFO"

    def __post_init__(self):
        self.db_path = Path(self.db_path)
        if not isinstance(self.amount_tolerance, Decimal):
            self.amount_tolerance = Decimal(str(self.amount_tolerance))
        if self.amount_tolerance <= 0:
            raise ValueError("amount_tolerance must be positive")
        if self.gateway_timeout_seconds <= 0:
            raise ValueError("gateway_timeout_seconds must be positive")
        if self.gateway_max_retries < 0:
            raise ValueError("gateway_max_retries cannot be negative")
        if len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency}")
        self.currency = self.currency.lower()

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Build a config from environment variables, falling back to defaults."""
        kwargs = {}
        if os.environ.get("GIGLEDGER_DB_PATH"):
            kwargs["db_path"] = Path(os.environ["GIGLEDGER_DB_PATH"]).expanduser()
        if os.environ.get("GIGLEDGER_CURRENCY"):
            kwargs["currency"] = os.environ["GIGLEDGER_CURRENCY"]
        if os.environ.get("GIGLEDGER_GATEWAY_TIMEOUT"):
            kwargs["gateway_timeout_seconds"] = float(os.environ["GIGLEDGER_GATEWAY_TIMEOUT"])
        if os.environ.get("GIGLEDGER_GATEWAY_RETRIES"):
            kwargs["gateway_max_retries"] = int(os.environ["GIGLEDGER_GATEWAY_RETRIES"])
        if os.environ.get("GIGLEDGER_LOG_LEVEL"):
            kwargs["log_level"] = os.environ["GIGLEDGER_LOG_LEVEL"]
        return cls(
            stripe_secret_key=os.environ.get("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET"),
            **kwargs,
        )
