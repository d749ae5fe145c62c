"""Engine wiring for the FastAPI app."""

from typing import Annotated

from fastapi import Depends

from gigledger.engine import LifecycleEngine

from .config import Settings, get_settings

_engine: LifecycleEngine | None = None


def get_lifecycle_engine(settings: Settings | None = None) -> LifecycleEngine:
    """Get the cached lifecycle engine."""
    global _engine
    if _engine is None:
        if settings is None:
            settings = get_settings()
        _engine = LifecycleEngine.from_config(settings.ledger_config())
    return _engine


def set_lifecycle_engine(engine: LifecycleEngine | None) -> None:
    """Replace the cached engine (used by tests to inject a fake gateway)."""
    global _engine
    _engine = engine


def get_engine(settings: Annotated[Settings, Depends(get_settings)]) -> LifecycleEngine:
    """FastAPI dependency for the lifecycle engine."""
    return get_lifecycle_engine(settings)


# Type alias for dependency injection
Engine = Annotated[LifecycleEngine, Depends(get_engine)]
