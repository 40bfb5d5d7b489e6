"""
Food Delivery Warehouse
Configuration Module
"""
from .settings import Settings, MergeSettings, get_settings

__all__ = ["Settings", "MergeSettings", "get_settings"]
