"""
RedCart payments backend.

Checkout, M-Pesa STK push payments, callback/poll reconciliation and
idempotent receipt issuance on top of an async relational store.
"""

__version__ = "1.0.0"
