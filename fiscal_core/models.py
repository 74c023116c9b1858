from sqlalchemy import Column, Integer, String, Numeric, Boolean, DateTime, ForeignKey, Text, Date, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


class InvoiceCounter(Base):
    """
    Contador de numeración por (emisor, serie).

    Se crea en el primer uso y solo se incrementa; un número anulado
    nunca se reutiliza.
    """
    __tablename__ = "invoice_counters"
    __table_args__ = (UniqueConstraint("issuer_id", "series", name="uq_invoice_counters_issuer_series"),)

    id = Column(Integer, primary_key=True, index=True)
    issuer_id = Column(String(64), nullable=False, index=True)
    series = Column(String(3), nullable=False)
    sequence = Column(Integer, nullable=False)                      # Último número emitido
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BillingSettings(Base):
    """
    Configuración de facturación de cada emisor.
    Datos fiscales, serie e impuestos por defecto.
    """
    __tablename__ = "billing_settings"

    id = Column(Integer, primary_key=True, index=True)
    issuer_id = Column(String(64), unique=True, index=True, nullable=False)

    tax_id = Column(String(9), nullable=True)                       # NIF/NIE/CIF normalizado
    legal_name = Column(String(255), nullable=True)
    address = Column(String, nullable=True)
    city = Column(String, nullable=True)
    postal_code = Column(String(10), nullable=True)
    province = Column(String, nullable=True)

    series = Column(String(3), default="F", nullable=False)
    default_vat_rate = Column(Numeric(5, 2), default=21)            # IVA por defecto
    default_withholding_rate = Column(Numeric(5, 2), default=0)     # IRPF por defecto
    vat_exempt = Column(Boolean, default=False)
    exemption_text = Column(Text, nullable=True)                    # Ej. Art. 20.Uno.3º Ley 37/1992
    sequence_origin = Column(Integer, nullable=True)                # Solo aplica al crear el contador


class Invoice(Base):
    """
    Cabecera de factura.
    Nace en borrador sin número; al emitirse recibe número y snapshot del emisor.
    """
    __tablename__ = "invoices"
    __table_args__ = (UniqueConstraint("issuer_id", "series", "sequence", name="uq_invoices_issuer_number"),)

    id = Column(Integer, primary_key=True, index=True)
    issuer_id = Column(String(64), index=True, nullable=False)
    status = Column(String, default="DRAFT", nullable=False)        # DRAFT, ISSUED, PAID, CANCELLED

    # --- NUMERACIÓN FISCAL ---
    series = Column(String(3), nullable=True)
    sequence = Column(Integer, nullable=True)
    number = Column(String, nullable=True, index=True)               # Ej. F000123
    issue_date = Column(Date, nullable=True)

    # Snapshot del emisor al emitir
    issuer_tax_id = Column(String(9))
    issuer_legal_name = Column(String)
    issuer_address = Column(String)

    # Receptor
    recipient_name = Column(String)
    recipient_tax_id = Column(String(9))
    recipient_address = Column(String)

    concept = Column(String, nullable=True)
    service_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    # ---- MONTOS ----
    base_amount = Column(Numeric(12, 2), default=0)
    vat_rate = Column(Numeric(5, 2), default=0)
    vat_amount = Column(Numeric(12, 2), default=0)
    withholding_rate = Column(Numeric(5, 2), default=0)
    withholding_amount = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), default=0)
    vat_exempt = Column(Boolean, default=False)
    exemption_text = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lines = relationship(
        "InvoiceLine",
        back_populates="invoice",
        cascade="all, delete-orphan",
        order_by="InvoiceLine.position",
    )


class InvoiceLine(Base):
    """Detalle de servicios de la factura."""
    __tablename__ = "invoice_lines"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False)

    position = Column(Integer, default=0)
    description = Column(String(500), nullable=False)
    quantity = Column(Numeric(12, 3), default=1)
    unit_price = Column(Numeric(12, 2))
    subtotal = Column(Numeric(12, 2))                                # qty * unit_price (solo visualización)

    invoice = relationship("Invoice", back_populates="lines")
