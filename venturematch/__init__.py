"""
Entrepreneur and funder matching service.
"""
__version__ = "1.0.0"
