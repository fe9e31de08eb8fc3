"""
Shared utilities for the dialer.
"""
