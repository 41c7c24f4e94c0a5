"""
Contract Billing Engine

Contract-to-cash billing for equipment sales: contract lifecycle, installment
schedules with Decimal-precise amortization, pluggable payment strategies with a
gateway handshake, and a background reminder sweep.
"""

__version__ = "1.0.0"
