"""reqflow utility modules."""

from reqflow.utils.logger import get_logger

__all__ = ["get_logger"]
