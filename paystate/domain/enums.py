from __future__ import annotations

from enum import Enum


class PaymentMethod(str, Enum):
    """Payment rails a payer can choose at checkout."""

    CARD = "card"
    WIDGET = "widget"
    CHECKOUT_WEB = "checkout-web"
    NEQUI = "nequi"
    BANCOLOMBIA = "bancolombia"
    PSE = "pse"
    CASH = "cash"

    @property
    def display_name(self) -> str:
        mapping = {
            PaymentMethod.CARD: "Tarjeta",
            PaymentMethod.WIDGET: "Tarjeta",
            PaymentMethod.CHECKOUT_WEB: "Wompi",
            PaymentMethod.NEQUI: "Nequi",
            PaymentMethod.BANCOLOMBIA: "Bancolombia",
            PaymentMethod.PSE: "PSE",
            PaymentMethod.CASH: "Efectivo",
        }
        return mapping.get(self, self.value)


class PseUserType(str, Enum):
    """PSE payer kind (Wompi expects 0 or 1)."""

    PERSON = "0"
    COMPANY = "1"
