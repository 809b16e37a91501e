"""Utility modules."""

from context_memory.utils.logger import OperationLogger, get_logger, setup_logging

__all__ = [
    "setup_logging",
    "get_logger",
    "OperationLogger",
]
