"""
Core utilities package.
"""

from volumebot.core.session_logger import SessionLogger, SessionLoggerConfig
from volumebot.core.utils import KeyedLocks, now_ms

__all__ = [
    "SessionLogger",
    "SessionLoggerConfig",
    "KeyedLocks",
    "now_ms",
]
