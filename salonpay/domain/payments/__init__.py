"""Payments domain - Mercado Pago persistence and API schemas"""

from .repository import PaymentsRepository

__all__ = ["PaymentsRepository"]
