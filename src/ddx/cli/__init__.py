"""
Command-line interface for the DirectDrive transfer client.
"""
