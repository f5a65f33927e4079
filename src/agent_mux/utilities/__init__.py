"""Utility modules."""

from agent_mux.utilities.logger import get_logger, setup_logging

__all__ = ["get_logger", "setup_logging"]
