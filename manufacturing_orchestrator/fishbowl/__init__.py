"""
Fishbowl integration: HTTP client, typed transaction records and SQL builders.
"""

from .client import FishbowlClient
from .records import LocationRef, Pick, PickItem, WorkOrder, WorkOrderItem

__all__ = [
    "FishbowlClient",
    "LocationRef",
    "Pick",
    "PickItem",
    "WorkOrder",
    "WorkOrderItem",
]
