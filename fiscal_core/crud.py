import logging
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from . import models, schemas
from .config import LedgerSettings
from .exceptions import InvalidInvoiceState, InvoiceNotFound
from .services.numbering import (
    CounterKey,
    SqlSequenceCounter,
    format_invoice_number,
    normalize_series,
    retrying,
    storage_errors,
)
from .services.totals import compute_breakdown, line_subtotal
from .utils.money import round_money

logger = logging.getLogger(__name__)

# Estados de factura
DRAFT = "DRAFT"
ISSUED = "ISSUED"
PAID = "PAID"
CANCELLED = "CANCELLED"


# --- CONFIGURACIÓN DE FACTURACIÓN ---
async def get_billing_settings(db: AsyncSession, issuer_id: str, settings: LedgerSettings = None) -> models.BillingSettings:
    """
    Obtiene la configuración del emisor.
    Si no existe, crea una configuración por defecto.
    """
    settings = settings or LedgerSettings()
    result = await db.execute(select(models.BillingSettings).where(models.BillingSettings.issuer_id == issuer_id))
    billing = result.scalars().first()

    # Si no existe, creamos los valores por defecto
    if not billing:
        billing = models.BillingSettings(
            issuer_id=issuer_id,
            series=settings.default_series,
            default_vat_rate=settings.default_vat_rate,
            default_withholding_rate=settings.default_withholding_rate,
            vat_exempt=False,
        )
        db.add(billing)
        await db.commit()
        await db.refresh(billing)

    return billing


async def update_billing_settings(
    db: AsyncSession,
    issuer_id: str,
    data: schemas.BillingSettingsUpdate,
    settings: LedgerSettings = None,
) -> models.BillingSettings:
    """Actualiza la configuración. El NIF/CIF ya llega validado y normalizado por el esquema."""
    billing = await get_billing_settings(db, issuer_id, settings)
    for field, value in data.model_dump().items():
        setattr(billing, field, value)

    db.add(billing)
    await db.commit()
    await db.refresh(billing)
    return billing


# --- FACTURAS ---
async def get_invoice(db: AsyncSession, issuer_id: str, invoice_id: int, for_update: bool = False) -> models.Invoice:
    """Busca una factura del emisor con sus líneas cargadas."""
    query = (
        select(models.Invoice)
        .options(selectinload(models.Invoice.lines))
        .filter(models.Invoice.id == invoice_id, models.Invoice.issuer_id == issuer_id)
    )
    if for_update:
        query = query.with_for_update()

    invoice = (await db.execute(query)).scalars().first()
    if not invoice:
        raise InvoiceNotFound(f"Factura {invoice_id} no encontrada")
    return invoice


async def create_draft_invoice(
    db: AsyncSession,
    issuer_id: str,
    data: schemas.InvoiceDraftCreate,
    settings: LedgerSettings = None,
) -> models.Invoice:
    """
    Registra un borrador sin número.

    Los tipos que no vengan en ``data`` se toman de la configuración del
    emisor. Los importes son una vista previa; se recalculan al emitir.
    """
    billing = await get_billing_settings(db, issuer_id, settings)

    # La exención del emisor no se puede desactivar desde un borrador
    vat_exempt = bool(billing.vat_exempt) or bool(data.vat_exempt)
    vat_rate = billing.default_vat_rate if data.vat_rate is None else data.vat_rate
    withholding_rate = billing.default_withholding_rate if data.withholding_rate is None else data.withholding_rate

    breakdown = compute_breakdown(data.lines, vat_rate, withholding_rate, vat_exempt=vat_exempt)

    db_lines = [
        models.InvoiceLine(
            position=index,
            description=line.description.strip(),
            quantity=line.quantity,
            unit_price=line.unit_price,
            subtotal=round_money(line_subtotal(line, index)),
        )
        for index, line in enumerate(data.lines)
    ]

    invoice = models.Invoice(
        issuer_id=issuer_id,
        status=DRAFT,
        series=normalize_series(data.series or billing.series),
        recipient_name=data.recipient_name,
        recipient_tax_id=data.recipient_tax_id,
        recipient_address=data.recipient_address,
        concept=data.concept,
        service_date=data.service_date,
        due_date=data.due_date,
        notes=data.notes,
        vat_rate=vat_rate,
        withholding_rate=withholding_rate,
        vat_exempt=vat_exempt,
        exemption_text=billing.exemption_text if vat_exempt else None,
        base_amount=breakdown.base_amount,
        vat_amount=breakdown.vat_amount,
        withholding_amount=breakdown.withholding_amount,
        total=breakdown.total,
        lines=db_lines,
    )
    db.add(invoice)
    await db.commit()

    return await get_invoice(db, issuer_id, invoice.id)


async def issue_invoice(
    db: AsyncSession,
    issuer_id: str,
    invoice_id: int,
    settings: LedgerSettings = None,
    issue_date: Optional[date] = None,
) -> models.Invoice:
    """
    Emite un borrador: recalcula totales, asigna número y congela los datos del emisor.

    Todo ocurre en una única transacción. Si algo falla se hace rollback:
    ni se consume número ni queda una factura emitida sin número.

    Raises:
        InvoiceNotFound, InvalidInvoiceState, InvalidLineItem,
        NumberingContention, StorageUnavailable
    """
    settings = settings or LedgerSettings()

    async def attempt() -> models.Invoice:
        try:
            async with storage_errors():
                billing = await get_billing_settings(db, issuer_id, settings)
                origin = billing.sequence_origin or settings.sequence_origin

                invoice = await get_invoice(db, issuer_id, invoice_id, for_update=True)
                if invoice.status != DRAFT:
                    raise InvalidInvoiceState(f"Solo se emiten borradores (estado actual: {invoice.status})")

                vat_exempt = bool(invoice.vat_exempt) or bool(billing.vat_exempt)
                breakdown = compute_breakdown(
                    invoice.lines,
                    invoice.vat_rate,
                    invoice.withholding_rate,
                    vat_exempt=vat_exempt,
                )

                key = CounterKey(issuer_id, normalize_series(invoice.series or billing.series))
                sequence = await SqlSequenceCounter.increment(db, key, origin)
                invoice.series = key.series
                invoice.sequence = sequence
                invoice.number = format_invoice_number(key.series, sequence, settings.number_width)
                invoice.issue_date = issue_date or date.today()
                invoice.status = ISSUED

                invoice.base_amount = breakdown.base_amount
                invoice.vat_rate = breakdown.vat_rate
                invoice.vat_amount = breakdown.vat_amount
                invoice.withholding_rate = breakdown.withholding_rate
                invoice.withholding_amount = breakdown.withholding_amount
                invoice.total = breakdown.total
                invoice.vat_exempt = vat_exempt
                if vat_exempt and not invoice.exemption_text:
                    invoice.exemption_text = billing.exemption_text

                # Snapshot del emisor: si cambia sus datos mañana, la factura no cambia
                invoice.issuer_tax_id = billing.tax_id
                invoice.issuer_legal_name = billing.legal_name
                invoice.issuer_address = billing.address

                db.add(invoice)
                await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(f"✅ Factura {invoice.id} emitida con número {invoice.number} (total {invoice.total})")
        return invoice

    invoice = await retrying(attempt, settings.numbering_max_retries, label=f"{issuer_id}/factura {invoice_id}")
    return await get_invoice(db, issuer_id, invoice.id)


async def cancel_invoice(db: AsyncSession, issuer_id: str, invoice_id: int) -> models.Invoice:
    """Anula una factura emitida. El número queda consumido y no se reutiliza."""
    invoice = await get_invoice(db, issuer_id, invoice_id, for_update=True)
    if invoice.status not in (ISSUED, PAID):
        raise InvalidInvoiceState(f"Solo se anulan facturas emitidas (estado actual: {invoice.status})")

    invoice.status = CANCELLED
    db.add(invoice)
    await db.commit()
    logger.info(f"🚫 Factura {invoice.number} anulada")

    return await get_invoice(db, issuer_id, invoice_id)


async def mark_invoice_paid(db: AsyncSession, issuer_id: str, invoice_id: int) -> models.Invoice:
    invoice = await get_invoice(db, issuer_id, invoice_id, for_update=True)
    if invoice.status != ISSUED:
        raise InvalidInvoiceState(f"Solo se cobran facturas emitidas (estado actual: {invoice.status})")

    invoice.status = PAID
    db.add(invoice)
    await db.commit()

    return await get_invoice(db, issuer_id, invoice_id)


def preview_breakdown(data: schemas.BreakdownRequest) -> schemas.TaxBreakdown:
    return compute_breakdown(data.lines, data.vat_rate, data.withholding_rate, vat_exempt=data.vat_exempt)
