"""
VoIP dialer core: call event bus, call-control client and proxy.
"""

__version__ = "1.0.0"
