"""
gigledger - contract, milestone and escrow lifecycle engine.

Moves marketplace contracts through their stages, enforces who may trigger
each transition, and settles milestone payments through an escrow gateway.
"""

from .config import LedgerConfig
from .engine import ErrorInfo, LifecycleEngine, Outcome
from .errors import ErrorCode, LifecycleError
from .principals import Principal, Role

try:
    from importlib.metadata import version

    __version__ = version("gigledger")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "ErrorCode",
    "ErrorInfo",
    "LedgerConfig",
    "LifecycleEngine",
    "LifecycleError",
    "Outcome",
    "Principal",
    "Role",
]
