"""
Core configuration, constants and error handling.
"""
