"""
Payment gateway adapters for off-session charges.
"""

from flora.platform.billing.payments.gateway import ChargeResult, PaymentGateway

__all__ = ["ChargeResult", "PaymentGateway"]
