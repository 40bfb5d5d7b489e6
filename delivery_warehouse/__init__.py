"""
Food Delivery Warehouse

Incremental star-schema merge engine for food delivery data.
"""

__version__ = "1.0.0"
