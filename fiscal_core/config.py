import os
from decimal import Decimal

from pydantic import BaseModel, Field


class LedgerSettings(BaseModel):
    """
    Parámetros de numeración y de impuestos por defecto.

    La librería los recibe como argumento; solo la aplicación los lee del
    entorno con ``from_env``.
    """
    number_width: int = Field(6, ge=1, le=18, description="Ancho del relleno con ceros del número")
    sequence_origin: int = Field(1, ge=1, description="Primer número de un contador nuevo")
    default_series: str = Field("F", pattern=r"^[A-Z]{1,3}$")
    numbering_max_retries: int = Field(5, ge=1, description="Reintentos ante conflicto de concurrencia")
    default_vat_rate: Decimal = Field(Decimal("21"), ge=0)          # IVA general
    default_withholding_rate: Decimal = Field(Decimal("0"), ge=0)   # IRPF

    @classmethod
    def from_env(cls) -> "LedgerSettings":
        return cls(
            number_width=int(os.getenv("INVOICE_NUMBER_WIDTH", "6")),
            sequence_origin=int(os.getenv("INVOICE_SEQUENCE_ORIGIN", "1")),
            default_series=os.getenv("INVOICE_DEFAULT_SERIES", "F"),
            numbering_max_retries=int(os.getenv("NUMBERING_MAX_RETRIES", "5")),
            default_vat_rate=Decimal(os.getenv("DEFAULT_VAT_RATE", "21")),
            default_withholding_rate=Decimal(os.getenv("DEFAULT_WITHHOLDING_RATE", "0")),
        )
