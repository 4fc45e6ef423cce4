"""
Payguard - payment integrity and abuse prevention service.

Receipt validation, signed notification verification, fraud scoring
and admin rate limiting for in-app purchases.
"""

__version__ = "1.0.0"
