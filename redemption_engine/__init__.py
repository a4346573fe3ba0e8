"""
Voucher Redemption & Fraud Detection Engine
"""
__version__ = "1.0.0"
