from pydantic import BaseModel, ConfigDict, Field
from decimal import Decimal
from datetime import datetime, date
from typing import List, Optional

from .services.tax_id import SpanishTaxId, TaxIdKind


# --- IDENTIFICADORES ---
class TaxIdValidateRequest(BaseModel):
    tax_id: Optional[str] = None


class TaxIdValidateResponse(BaseModel):
    valid: bool
    kind: Optional[TaxIdKind] = None
    normalized: str
    formatted: str
    message: Optional[str] = None


# --- LÍNEAS Y TOTALES ---
class InvoiceLineCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: Decimal = Field(Decimal(1), gt=0, decimal_places=3)
    unit_price: Decimal = Field(..., ge=0, decimal_places=2)


class TaxBreakdown(BaseModel):
    """Desglose fiscal. ``total`` se deriva de los componentes ya redondeados."""
    base_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    withholding_rate: Decimal
    withholding_amount: Decimal
    total: Decimal
    vat_exempt: bool = False

    model_config = ConfigDict(frozen=True)


class BreakdownRequest(BaseModel):
    lines: List[InvoiceLineCreate] = Field(..., min_length=1)
    vat_rate: Decimal = Field(Decimal(0), ge=0)
    withholding_rate: Decimal = Field(Decimal(0), ge=0)
    vat_exempt: bool = False


# --- NUMERACIÓN ---
class InvoiceNumber(BaseModel):
    issuer_id: str
    series: str
    sequence: int = Field(..., gt=0)
    formatted: str

    model_config = ConfigDict(frozen=True)


# --- CONFIGURACIÓN DE FACTURACIÓN (por emisor) ---
class BillingSettingsBase(BaseModel):
    tax_id: Optional[SpanishTaxId] = Field(None, description="NIF/NIE/CIF del emisor")
    legal_name: Optional[str] = Field(None, max_length=255, description="Razón social")
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    province: Optional[str] = None
    series: str = Field("F", pattern=r"^[A-Z]{1,3}$")
    default_vat_rate: Decimal = Field(Decimal(21), ge=0)
    default_withholding_rate: Decimal = Field(Decimal(0), ge=0)
    vat_exempt: bool = False
    exemption_text: Optional[str] = None
    sequence_origin: Optional[int] = Field(None, ge=1, description="Primer número si el contador aún no existe")


class BillingSettingsUpdate(BillingSettingsBase):
    pass


class BillingSettingsRead(BillingSettingsBase):
    id: int
    issuer_id: str
    # Lo almacenado ya se validó al guardar
    tax_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# --- FACTURAS ---
class InvoiceDraftCreate(BaseModel):
    recipient_name: Optional[str] = None
    recipient_tax_id: Optional[SpanishTaxId] = Field(None, description="Se valida antes de persistir")
    recipient_address: Optional[str] = None
    concept: Optional[str] = None
    service_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    series: Optional[str] = Field(None, pattern=r"^[A-Z]{1,3}$")
    # Si faltan se usan los de la configuración del emisor
    vat_rate: Optional[Decimal] = Field(None, ge=0)
    withholding_rate: Optional[Decimal] = Field(None, ge=0)
    vat_exempt: Optional[bool] = None
    lines: List[InvoiceLineCreate] = Field(..., min_length=1)


class InvoiceLineResponse(BaseModel):
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    subtotal: Decimal
    model_config = ConfigDict(from_attributes=True)


class InvoiceResponse(BaseModel):
    id: int
    issuer_id: str
    status: str

    series: Optional[str] = None
    sequence: Optional[int] = None
    number: Optional[str] = None
    issue_date: Optional[date] = None

    issuer_tax_id: Optional[str] = None
    issuer_legal_name: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_tax_id: Optional[str] = None

    base_amount: Decimal
    vat_rate: Decimal
    vat_amount: Decimal
    withholding_rate: Decimal
    withholding_amount: Decimal
    total: Decimal
    vat_exempt: bool
    exemption_text: Optional[str] = None

    lines: List[InvoiceLineResponse]
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
