"""
bootkit.handlers - Operation bodies and their registry.
"""

from bootkit.handlers.base import (
    CallableHandler,
    CommandHandler,
    OperationContext,
    OperationHandler,
    OperationResult,
)
from bootkit.handlers.registry import HandlerRegistry

__all__ = [
    "CallableHandler",
    "CommandHandler",
    "HandlerRegistry",
    "OperationContext",
    "OperationHandler",
    "OperationResult",
]
