from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Status of an order's payment."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    CONFIRMED = "CONFIRMED"
    ERROR = "ERROR"

    @property
    def display_name(self) -> str:
        """Human-friendly label matching business glossary."""

        mapping = {
            PaymentStatus.PENDING: "PENDIENTE",
            PaymentStatus.APPROVED: "APROBADO",
            PaymentStatus.CONFIRMED: "CONFIRMADO",
            PaymentStatus.ERROR: "RECHAZADO",
        }
        return mapping.get(self, self.value)

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.CONFIRMED, PaymentStatus.ERROR)

    @property
    def rank(self) -> int | None:
        """Position on the success path; ERROR sits outside of it."""

        ranks = {
            PaymentStatus.PENDING: 0,
            PaymentStatus.APPROVED: 1,
            PaymentStatus.CONFIRMED: 2,
        }
        return ranks.get(self)


class GatewayStatus(str, Enum):
    """Transaction status as reported by Wompi."""

    APPROVED = "APPROVED"
    DECLINED = "DECLINED"
    ERROR = "ERROR"
    PENDING = "PENDING"
    VOIDED = "VOIDED"

    @classmethod
    def parse(cls, value: str | None) -> GatewayStatus | None:
        try:
            return cls(str(value or "").upper())
        except ValueError:
            return None

    @property
    def is_failure(self) -> bool:
        return self in (GatewayStatus.DECLINED, GatewayStatus.ERROR, GatewayStatus.VOIDED)
