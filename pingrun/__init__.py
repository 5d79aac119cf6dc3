"""
pingrun: run a command and report its outcome to a heartbeat monitoring service.
"""

__version__ = "0.4.0"
