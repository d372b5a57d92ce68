"""
Operational Utilities
"""
