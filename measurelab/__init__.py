"""
measurelab: criteria tree engine for clinical quality measures.
"""

__version__ = "0.1.0"
