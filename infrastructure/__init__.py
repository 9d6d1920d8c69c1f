"""Infrastructure layer for the TimeCast installer.

This package contains concrete implementations of external interfaces:
the pyserial transport and the esptool flash loader.
"""

__version__ = "0.1.0"
