"""
Validador de identificadores fiscales españoles (NIF / NIE / CIF).

Todas las funciones públicas salvo ``parse_tax_id`` son totales: una entrada
mal escrita produce un resultado ``valid=False``, nunca una excepción. Los
formularios traducen ese resultado en un mensaje de campo.
"""
import re
from enum import Enum
from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, model_validator

from ..exceptions import ChecksumMismatch, InvalidTaxIdentifier, MalformedIdentifier

NIF_LETTERS = "TRWAGMYFPDXBNJZSQVHLCKE"
CIF_LETTERS = "JABCDEFGHI"
NIE_PREFIXES = {"X": "0", "Y": "1", "Z": "2"}

# Tipos de organización según la letra inicial del CIF
CIF_LETTER_CONTROL = frozenset("KPQSNW")
CIF_DIGIT_CONTROL = frozenset("ABEH")

_SEPARATORS = re.compile(r"[\s\-]+")

# Se prueban en este orden; el CIF nunca empieza por X, Y o Z
_NIF_SHAPE = re.compile(r"[0-9]{8}[A-Z]")
_NIE_SHAPE = re.compile(r"[XYZ][0-9]{7}[A-Z]")
_CIF_SHAPE = re.compile(r"[A-W][0-9]{7}[0-9A-Z]")


class TaxIdKind(str, Enum):
    NIF = "NIF"
    NIE = "NIE"
    CIF = "CIF"


def normalize(raw) -> str:
    """Mayúsculas, sin espacios ni guiones. Nunca falla."""
    if raw is None:
        return ""
    return _SEPARATORS.sub("", str(raw)).upper()


def classify(normalized: str) -> Optional[TaxIdKind]:
    """Tipo de identificador según su forma, o ``None`` si no encaja con ninguna."""
    if _NIF_SHAPE.fullmatch(normalized):
        return TaxIdKind.NIF
    if _NIE_SHAPE.fullmatch(normalized):
        return TaxIdKind.NIE
    if _CIF_SHAPE.fullmatch(normalized):
        return TaxIdKind.CIF
    return None


def nif_letter(number: str) -> str:
    return NIF_LETTERS[int(number) % 23]


def validate_nif(normalized: str) -> bool:
    if not _NIF_SHAPE.fullmatch(normalized):
        return False
    return normalized[8] == nif_letter(normalized[:8])


def validate_nie(normalized: str) -> bool:
    if not _NIE_SHAPE.fullmatch(normalized):
        return False
    number = NIE_PREFIXES[normalized[0]] + normalized[1:8]
    return normalized[8] == nif_letter(number)


def cif_control(body: str) -> tuple:
    """
    Dígito y letra de control para los 7 dígitos centrales de un CIF.

    Posiciones pares (0, 2, 4, 6): se dobla el dígito y se suman sus cifras.
    Posiciones impares: se suma el dígito tal cual.
    """
    total = 0
    for index, char in enumerate(body):
        digit = int(char)
        if index % 2 == 0:
            doubled = digit * 2
            total += doubled // 10 + doubled % 10
        else:
            total += digit

    units = total % 10
    control_digit = 0 if units == 0 else 10 - units
    return str(control_digit), CIF_LETTERS[control_digit]


def validate_cif(normalized: str) -> bool:
    if not _CIF_SHAPE.fullmatch(normalized):
        return False

    org_type = normalized[0]
    control = normalized[8]
    digit, letter = cif_control(normalized[1:8])

    if org_type in CIF_LETTER_CONTROL:
        return control == letter
    if org_type in CIF_DIGIT_CONTROL:
        return control == digit
    # Resto de tipos: se acepta cualquiera de las dos formas
    return control in (digit, letter)


_VALIDATORS = {
    TaxIdKind.NIF: validate_nif,
    TaxIdKind.NIE: validate_nie,
    TaxIdKind.CIF: validate_cif,
}


class TaxIdValidation(BaseModel):
    """Resultado de validar un identificador. ``kind`` es None si no hay forma reconocible."""
    valid: bool
    kind: Optional[TaxIdKind] = None
    normalized: str
    message: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class FiscalIdentifier(BaseModel):
    """
    Identificador fiscal ya validado e inmutable.

    Se obtiene con ``parse_tax_id``. Construirlo a mano con campos
    incoherentes falla igual que el parser.
    """
    kind: TaxIdKind
    raw: str
    normalized: str

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _check_consistency(self):
        kind = classify(self.normalized)
        if kind is None:
            raise MalformedIdentifier(self.raw)
        if normalize(self.raw) != self.normalized:
            raise ValueError(f"{self.raw!r} no corresponde a {self.normalized}")
        if kind != self.kind:
            raise ValueError(f"El identificador {self.normalized} es de tipo {kind.value}, no {self.kind.value}")
        if not _VALIDATORS[kind](self.normalized):
            raise ChecksumMismatch(self.raw)
        return self

    @property
    def formatted(self) -> str:
        return format_tax_id(self.normalized)

    def __str__(self) -> str:
        return self.normalized


def parse_tax_id(raw) -> FiscalIdentifier:
    """
    Único camino de construcción de ``FiscalIdentifier``.

    Raises:
        MalformedIdentifier: ninguna forma reconocida.
        ChecksumMismatch: la letra o dígito de control no coincide.
    """
    normalized = normalize(raw)
    kind = classify(normalized)
    if kind is None:
        raise MalformedIdentifier(raw)
    if not _VALIDATORS[kind](normalized):
        raise ChecksumMismatch(raw)
    return FiscalIdentifier(kind=kind, raw="" if raw is None else str(raw), normalized=normalized)


def validate(raw) -> TaxIdValidation:
    """Normaliza, clasifica y valida. No lanza excepciones."""
    normalized = normalize(raw)
    kind = classify(normalized)
    if kind is None:
        return TaxIdValidation(valid=False, normalized=normalized, message=InvalidTaxIdentifier.message)

    valid = _VALIDATORS[kind](normalized)
    return TaxIdValidation(
        valid=valid,
        kind=kind,
        normalized=normalized,
        message=None if valid else InvalidTaxIdentifier.message,
    )


def is_valid_tax_id(raw) -> bool:
    return validate(raw).valid


def format_tax_id(raw) -> str:
    """Formatea con guion antes del carácter de control (``12345678-Z``)."""
    normalized = normalize(raw)
    if len(normalized) == 9:
        return f"{normalized[:8]}-{normalized[8:]}"
    return normalized


def _tax_id_field(value: str) -> str:
    result = validate(value)
    if not result.valid:
        raise ValueError(result.message)
    return result.normalized


# Tipo para esquemas que persisten datos de una parte (emisor / receptor)
SpanishTaxId = Annotated[str, AfterValidator(_tax_id_field)]
