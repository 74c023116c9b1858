from fastapi import FastAPI, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from contextlib import asynccontextmanager
from functools import lru_cache
import logging

# Imports Locales
from . import crud, schemas, database
from .config import LedgerSettings
from .exceptions import InvalidInvoiceState, InvalidLineItem, InvoiceNotFound, NumberingError
from .services import tax_id

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("fiscal-core")


@lru_cache
def get_settings() -> LedgerSettings:
    return LedgerSettings.from_env()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Crear tablas al inicio
    await database.db_manager.create_all()
    logger.info("🗄️ Tablas de facturación listas.")

    yield

    await database.db_manager.dispose()

# --- Configuración de FastAPI ---
app = FastAPI(
    title="Fiscal Core",
    description="Validación de NIF/NIE/CIF, desglose fiscal y numeración de facturas.",
    version="0.1.0",
    lifespan=lifespan
)


def _raise_for_ledger_error(e: Exception):
    """Traduce los errores del ledger a respuestas HTTP."""
    if isinstance(e, InvoiceNotFound):
        raise HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidLineItem):
        raise HTTPException(status_code=422, detail=str(e))
    if isinstance(e, InvalidInvoiceState):
        raise HTTPException(status_code=409, detail=str(e))
    if isinstance(e, NumberingError):
        # Sin número no hay factura: el cliente puede reintentar la emisión completa
        logger.error(f"❌ Emisión bloqueada: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    if isinstance(e, ValueError):
        raise HTTPException(status_code=400, detail=str(e))
    raise e


# --- IDENTIFICADORES FISCALES ---
@app.post("/tax-ids/validate", response_model=schemas.TaxIdValidateResponse)
async def validate_tax_id(payload: schemas.TaxIdValidateRequest):
    """
    **Validar NIF/NIE/CIF**

    Siempre responde 200; un identificador inválido devuelve `valid=false`
    y un mensaje listo para mostrar junto al campo.
    """
    result = tax_id.validate(payload.tax_id)
    return schemas.TaxIdValidateResponse(
        valid=result.valid,
        kind=result.kind,
        normalized=result.normalized,
        formatted=tax_id.format_tax_id(result.normalized),
        message=result.message,
    )

# --- TOTALES ---
@app.post("/invoices/breakdown", response_model=schemas.TaxBreakdown)
async def invoice_breakdown(payload: schemas.BreakdownRequest):
    """Calcula base imponible, IVA, IRPF y total sin persistir nada."""
    try:
        return crud.preview_breakdown(payload)
    except ValueError as e:
        _raise_for_ledger_error(e)

# --- CONFIGURACIÓN DEL EMISOR ---
@app.get("/issuers/{issuer_id}/billing-settings", response_model=schemas.BillingSettingsRead)
async def read_billing_settings(
    issuer_id: str,
    db: AsyncSession = Depends(database.get_db),
    settings: LedgerSettings = Depends(get_settings)
):
    return await crud.get_billing_settings(db, issuer_id, settings)

@app.put("/issuers/{issuer_id}/billing-settings", response_model=schemas.BillingSettingsRead)
async def write_billing_settings(
    issuer_id: str,
    payload: schemas.BillingSettingsUpdate,
    db: AsyncSession = Depends(database.get_db),
    settings: LedgerSettings = Depends(get_settings)
):
    """El NIF/CIF del emisor se valida antes de guardarse (422 si no es válido)."""
    return await crud.update_billing_settings(db, issuer_id, payload, settings)

# --- FACTURAS ---
@app.post("/issuers/{issuer_id}/invoices", response_model=schemas.InvoiceResponse, status_code=201)
async def create_draft(
    issuer_id: str,
    payload: schemas.InvoiceDraftCreate,
    db: AsyncSession = Depends(database.get_db),
    settings: LedgerSettings = Depends(get_settings)
):
    """
    **Crear borrador**

    Guarda las líneas con sus subtotales recalculados. El número se asigna al emitir.
    """
    try:
        return await crud.create_draft_invoice(db, issuer_id, payload, settings)
    except ValueError as e:
        _raise_for_ledger_error(e)

@app.get("/issuers/{issuer_id}/invoices/{invoice_id}", response_model=schemas.InvoiceResponse)
async def read_invoice(
    issuer_id: str,
    invoice_id: int,
    db: AsyncSession = Depends(database.get_db)
):
    try:
        return await crud.get_invoice(db, issuer_id, invoice_id)
    except InvoiceNotFound as e:
        _raise_for_ledger_error(e)

@app.post("/issuers/{issuer_id}/invoices/{invoice_id}/issue", response_model=schemas.InvoiceResponse)
async def issue_invoice(
    issuer_id: str,
    invoice_id: int,
    db: AsyncSession = Depends(database.get_db),
    settings: LedgerSettings = Depends(get_settings)
):
    """
    **Emitir factura**

    Recalcula el desglose y asigna el siguiente número de la serie en una
    sola transacción. Si la numeración falla responde 503 y la factura
    sigue en borrador.
    """
    try:
        return await crud.issue_invoice(db, issuer_id, invoice_id, settings)
    except (ValueError, LookupError, NumberingError) as e:
        _raise_for_ledger_error(e)

@app.post("/issuers/{issuer_id}/invoices/{invoice_id}/cancel", response_model=schemas.InvoiceResponse)
async def cancel_invoice(
    issuer_id: str,
    invoice_id: int,
    db: AsyncSession = Depends(database.get_db)
):
    """**Anular factura**. El número no se libera."""
    try:
        return await crud.cancel_invoice(db, issuer_id, invoice_id)
    except (ValueError, LookupError) as e:
        _raise_for_ledger_error(e)

@app.post("/issuers/{issuer_id}/invoices/{invoice_id}/pay", response_model=schemas.InvoiceResponse)
async def pay_invoice(
    issuer_id: str,
    invoice_id: int,
    db: AsyncSession = Depends(database.get_db)
):
    try:
        return await crud.mark_invoice_paid(db, issuer_id, invoice_id)
    except (ValueError, LookupError) as e:
        _raise_for_ledger_error(e)
