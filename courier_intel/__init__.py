"""Courier Intelligence - cross-shop delivery risk aggregation"""

__version__ = "1.0.0"
