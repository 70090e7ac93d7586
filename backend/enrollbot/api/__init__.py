"""
HTTP API for the desktop client and the payment provider.
"""
