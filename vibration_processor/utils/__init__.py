"""
Shared utilities
"""

from .config_loader import ConfigLoader, topic_names

__all__ = ["ConfigLoader", "topic_names"]
