"""Logging setup for gigledger.

Two outputs under ``{data_dir}/logs``:
- ``local-{date}.log``: regular module logging from the ``gigledger`` logger tree
- ``lifecycle-events-{date}.log``: one line per contract/milestone/payment event,
  kept separate so the lifecycle can be audited without the noise
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

from gigledger.config import get_data_dir

LOGGER_NAME = "gigledger"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _log_dir() -> Path:
    path = get_data_dir() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def setup_gigledger_logging(level: str = "INFO") -> logging.Logger:
    """Configure the ``gigledger`` logger.

    Safe to call more than once: handlers are only attached the first time.
    DEBUG also echoes to the console.

    Args:
        level: Level name, case-insensitive. Unknown names fall back to INFO.

    Returns:
        The configured ``gigledger`` logger.
    """
    logger = logging.getLogger(LOGGER_NAME)
    resolved = getattr(logging, str(level).upper(), None)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logger.setLevel(resolved)

    formatter = logging.Formatter(LOG_FORMAT)

    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(_log_dir() / f"local-{_today()}.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    has_console = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in logger.handlers
    )
    if resolved <= logging.DEBUG and not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        logger.addHandler(console)

    return logger


def log_lifecycle_event(event_type: str, details: str, contract_id: Optional[str] = None) -> None:
    """Append one line to today's lifecycle event log."""
    timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    line = f"{timestamp} | {event_type} | contract={contract_id or '-'} | {details}\n"
    path = _log_dir() / f"lifecycle-events-{_today()}.log"
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)


def log_transition(
    entity: str,
    entity_id: str,
    from_state: Optional[str],
    to_state: str,
    actor_id: str,
    contract_id: Optional[str] = None,
) -> None:
    """Record a state change of a contract, milestone or payment."""
    log_lifecycle_event(
        "transition",
        f"{entity}={entity_id[:8]}... | {from_state or 'NEW'} -> {to_state} | actor={actor_id}",
        contract_id=contract_id,
    )


def log_payment(
    action: str,
    payment_id: str,
    amount: Decimal,
    gateway_ref: Optional[str] = None,
    contract_id: Optional[str] = None,
) -> None:
    """Record a money movement (hold, transfer, refund)."""
    log_lifecycle_event(
        "payment",
        f"action={action} | payment={payment_id[:8]}... | amount={amount} "
        f"| ref={gateway_ref or '-'}",
        contract_id=contract_id,
    )
