from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """
    Convierte un valor numérico a Decimal.

    Los float pasan por ``str`` para no arrastrar el error binario
    (``Decimal(0.1)`` != ``Decimal("0.1")``).
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValueError(f"Valor numérico inválido: {value!r}")
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValueError(f"Valor numérico inválido: {value!r}")
    if not result.is_finite():
        raise ValueError(f"Valor numérico inválido: {value!r}")
    return result


def round_money(amount) -> Decimal:
    """Redondea un monto a 2 decimales (mitad hacia arriba, 0.005 -> 0.01)."""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def percentage_of(amount: Decimal, rate: Decimal) -> Decimal:
    """Importe de ``rate`` % sobre ``amount``, ya redondeado."""
    return round_money(to_decimal(amount) * to_decimal(rate) / Decimal(100))
