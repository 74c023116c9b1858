"""
Jerarquía de errores del núcleo fiscal.

Los errores de identificadores (``MalformedIdentifier``, ``ChecksumMismatch``)
solo se lanzan desde ``parse_tax_id``; ``validate`` los recupera y devuelve
un resultado. Los errores de numeración siempre se propagan: una factura
nunca se emite sin número.
"""


class FiscalCoreError(Exception):
    """Raíz de todos los errores del paquete."""


# --- IDENTIFICADORES FISCALES ---
class InvalidTaxIdentifier(FiscalCoreError, ValueError):
    """NIF/NIE/CIF no válido. Es el único mensaje visible para el usuario."""

    message = "Identificador fiscal no válido"

    def __init__(self, raw, detail: str = None):
        self.raw = raw
        self.detail = detail
        super().__init__(detail or self.message)


class MalformedIdentifier(InvalidTaxIdentifier):
    """El texto no encaja con ninguna forma de NIF, NIE o CIF."""


class ChecksumMismatch(InvalidTaxIdentifier):
    """La forma es correcta pero el carácter de control no coincide."""


# --- TOTALES ---
class InvalidLineItem(FiscalCoreError, ValueError):
    """Línea de factura o tipo impositivo inválido. Se rechaza antes de calcular."""

    def __init__(self, message: str, index: int = None):
        self.index = index
        if index is not None:
            message = f"Línea {index + 1}: {message}"
        super().__init__(message)


# --- NUMERACIÓN ---
class InvalidSeries(FiscalCoreError, ValueError):
    """La serie debe tener de 1 a 3 letras mayúsculas."""


class NumberingError(FiscalCoreError):
    """No se pudo asignar número. La emisión completa debe reintentarse."""


class CounterConflict(NumberingError):
    """Intento de incremento abortado por concurrencia; reintentable sin efectos."""


class NumberingContention(NumberingError):
    """Se agotaron los reintentos del incremento atómico."""


class StorageUnavailable(NumberingError):
    """El almacén del contador no responde. Nunca se fabrica un número."""


# --- CICLO DE VIDA DE FACTURAS ---
class InvoiceNotFound(FiscalCoreError, LookupError):
    """Factura inexistente o de otro emisor."""


class InvalidInvoiceState(FiscalCoreError, ValueError):
    """Transición de estado no permitida."""
