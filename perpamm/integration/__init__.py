"""
Engine facade and configuration
"""

from .config import EngineConfig, PerpetualSettings, PoolSettings, configure_logging, load_config
from .engine import EngineResult, PerpetualEngine

__all__ = [
    "EngineConfig",
    "PerpetualSettings",
    "PoolSettings",
    "configure_logging",
    "load_config",
    "EngineResult",
    "PerpetualEngine",
]
