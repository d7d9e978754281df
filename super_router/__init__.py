"""
x402 Super Router
Payment-gated AI media generation with a content-addressed cache
"""

__version__ = "0.1.0"
