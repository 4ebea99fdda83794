"""
Login brute-force protection: attempt logging, windowed counting and bans.
"""

__version__ = "0.1.0"
