"""
Delivery Module
"""

from .delivery_manager import DeliveryManager, Outcome

__all__ = ["DeliveryManager", "Outcome"]
