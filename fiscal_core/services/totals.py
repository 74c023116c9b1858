import logging
from decimal import Decimal
from typing import Iterable

from ..exceptions import InvalidLineItem
from ..schemas import TaxBreakdown
from ..utils.money import percentage_of, round_money, to_decimal

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500


def _field(line, name):
    if isinstance(line, dict):
        return line.get(name)
    return getattr(line, name, None)


def _decimal(value, what: str, index: int = None) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError:
        raise InvalidLineItem(f"{what} no es un número válido: {value!r}", index)


def line_subtotal(line, index: int = None) -> Decimal:
    """
    Subtotal de una línea (cantidad x precio), sin redondear.

    Nunca se confía en un subtotal recibido; se recalcula siempre.
    """
    description = _field(line, "description")
    if description is not None and not isinstance(description, str):
        raise InvalidLineItem("la descripción debe ser texto", index)
    description = (description or "").strip()
    if not description:
        raise InvalidLineItem("la descripción es obligatoria", index)
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidLineItem(f"la descripción supera {MAX_DESCRIPTION_LENGTH} caracteres", index)

    quantity = _decimal(_field(line, "quantity"), "La cantidad", index)
    unit_price = _decimal(_field(line, "unit_price"), "El precio unitario", index)

    if quantity <= 0:
        raise InvalidLineItem("la cantidad debe ser mayor que cero", index)
    if unit_price < 0:
        raise InvalidLineItem("el precio unitario no puede ser negativo", index)

    return quantity * unit_price


def compute_breakdown(
    lines: Iterable,
    vat_rate=Decimal(0),
    withholding_rate=Decimal(0),
    vat_exempt: bool = False,
) -> TaxBreakdown:
    """
    Calcula base imponible, IVA, IRPF y total de una factura.

    Cada componente se redondea por separado (mitad hacia arriba) y el total
    se obtiene de los componentes redondeados, sin volver a redondear, para
    que base + IVA - IRPF cuadre siempre al céntimo.

    Args:
        lines: líneas con ``description``, ``quantity`` y ``unit_price``.
        vat_rate: % de IVA. Se ignora si ``vat_exempt``.
        withholding_rate: % de retención IRPF.
        vat_exempt: la exención manda sobre cualquier tipo de IVA recibido.

    Raises:
        InvalidLineItem: sin líneas, cantidad <= 0, precio < 0 o tipos negativos.
    """
    lines = list(lines or [])
    if not lines:
        raise InvalidLineItem("La factura debe tener al menos una línea")

    vat_rate = _decimal(vat_rate, "El tipo de IVA")
    withholding_rate = _decimal(withholding_rate, "El tipo de retención")
    if vat_rate < 0:
        raise InvalidLineItem("El tipo de IVA no puede ser negativo")
    if withholding_rate < 0:
        raise InvalidLineItem("El tipo de retención no puede ser negativo")

    if vat_exempt:
        vat_rate = Decimal(0)

    raw_base = sum((line_subtotal(line, index) for index, line in enumerate(lines)), Decimal(0))

    base_amount = round_money(raw_base)
    vat_amount = percentage_of(base_amount, vat_rate)
    withholding_amount = percentage_of(base_amount, withholding_rate)
    total = base_amount + vat_amount - withholding_amount

    logger.debug(
        f"🧮 Desglose: base={base_amount} iva({vat_rate}%)={vat_amount} "
        f"irpf({withholding_rate}%)={withholding_amount} total={total}"
    )

    return TaxBreakdown(
        base_amount=base_amount,
        vat_rate=vat_rate,
        vat_amount=vat_amount,
        withholding_rate=withholding_rate,
        withholding_amount=withholding_amount,
        total=total,
        vat_exempt=vat_exempt,
    )
