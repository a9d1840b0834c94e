"""
DirectDrive transfer client.
"""

__version__ = "0.3.0"
