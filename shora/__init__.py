"""
Shora API - council decision voting and lifecycle service.
"""

__version__ = "0.1.0"
