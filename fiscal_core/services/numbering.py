"""
Numeración correlativa de facturas por (emisor, serie).

El contrato de atomicidad vive en ``SequenceCounter.next_value``: dos
llamadas concurrentes sobre la misma clave nunca reciben el mismo número y
un intento abortado no consume número. ``InvoiceNumbering`` añade los
reintentos acotados y el formato ``F000123``.
"""
import asyncio
import logging
import re
import threading
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Dict, NamedTuple, Optional, Protocol, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, DisconnectionError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from ..config import LedgerSettings
from ..exceptions import CounterConflict, InvalidSeries, NumberingContention, StorageUnavailable
from ..models import InvoiceCounter
from ..schemas import InvoiceNumber

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SERIES = re.compile(r"^[A-Z]{1,3}$")


class CounterKey(NamedTuple):
    issuer_id: str
    series: str


class SequenceCounter(Protocol):
    async def next_value(self, key: CounterKey, origin: int = 1) -> int:
        """
        Lee el valor actual, escribe valor + 1 y devuelve el nuevo valor
        (``origin`` si el contador no existía) en una sola operación atómica.

        Raises:
            CounterConflict: el intento se abortó sin consumir número.
            StorageUnavailable: el almacén no responde.
        """
        ...


def normalize_series(series: str) -> str:
    value = (series or "").strip().upper()
    if not _SERIES.match(value):
        raise InvalidSeries(f"Serie inválida: {series!r}. Debe tener de 1 a 3 letras")
    return value


def format_invoice_number(series: str, sequence: int, width: int = 6) -> str:
    """``F`` + número relleno con ceros (``F000123``). Nunca trunca."""
    return f"{series}{sequence:0{width}d}"


# --- ALMACENES ---
class InMemorySequenceCounter:
    """Contadores en memoria, uno por clave. Útil en tests y procesos únicos."""

    def __init__(self):
        self._values: Dict[CounterKey, int] = {}
        self._lock = threading.Lock()

    async def next_value(self, key: CounterKey, origin: int = 1) -> int:
        with self._lock:
            current = self._values.get(key)
            value = origin if current is None else current + 1
            self._values[key] = value
            return value

    def peek(self, key: CounterKey) -> Optional[int]:
        return self._values.get(key)


@asynccontextmanager
async def storage_errors():
    """
    Traduce errores de SQLAlchemy al contrato del contador.

    Violaciones de unicidad y bloqueos -> CounterConflict (reintentable).
    Conexiones perdidas o timeouts -> StorageUnavailable.
    """
    try:
        yield
    except IntegrityError as e:
        raise CounterConflict(f"Contador creado en paralelo: {e.orig}") from e
    except (InterfaceError, DisconnectionError) as e:
        raise StorageUnavailable(f"Almacén de contadores no disponible: {e}") from e
    except OperationalError as e:
        if e.connection_invalidated:
            raise StorageUnavailable(f"Conexión perdida con el almacén de contadores: {e.orig}") from e
        raise CounterConflict(f"Bloqueo o serialización en el contador: {e.orig}") from e
    except DBAPIError as e:
        raise StorageUnavailable(f"Error del almacén de contadores: {e.orig}") from e
    except (OSError, asyncio.TimeoutError) as e:
        raise StorageUnavailable(f"Almacén de contadores no disponible: {e}") from e


class SqlSequenceCounter:
    """
    Contador persistido en ``invoice_counters``.

    El incremento es un ``UPDATE ... SET sequence = sequence + 1`` seguido de
    la lectura dentro de la misma transacción: el bloqueo de fila (o de base
    de datos en SQLite) serializa a los escritores concurrentes.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    async def increment(db: AsyncSession, key: CounterKey, origin: int = 1) -> int:
        """
        Incrementa dentro de la transacción abierta en ``db``.
        El llamador hace commit o rollback; si hace rollback no se consume número.
        """
        condition = (InvoiceCounter.issuer_id == key.issuer_id) & (InvoiceCounter.series == key.series)

        result = await db.execute(
            update(InvoiceCounter)
            .where(condition)
            .values(sequence=InvoiceCounter.sequence + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Primer uso: crear. Si otro lo creó a la vez, la unicidad falla -> conflicto
            db.add(InvoiceCounter(issuer_id=key.issuer_id, series=key.series, sequence=origin))
            await db.flush()
            return origin

        return (await db.execute(select(InvoiceCounter.sequence).where(condition))).scalar_one()

    async def next_value(self, key: CounterKey, origin: int = 1) -> int:
        async with storage_errors():
            async with self.session_factory() as db:
                async with db.begin():
                    return await self.increment(db, key, origin)

    async def peek(self, key: CounterKey) -> Optional[int]:
        async with storage_errors():
            async with self.session_factory() as db:
                result = await db.execute(
                    select(InvoiceCounter.sequence).where(
                        InvoiceCounter.issuer_id == key.issuer_id,
                        InvoiceCounter.series == key.series,
                    )
                )
                return result.scalar_one_or_none()


# --- NUMERACIÓN ---
async def retrying(attempt: Callable[[], Awaitable[T]], max_retries: int, label: str = "") -> T:
    """
    Ejecuta ``attempt`` reintentando solo ante ``CounterConflict``.

    Agotados los reintentos falla cerrado con ``NumberingContention``;
    ``StorageUnavailable`` se propaga tal cual.
    """
    def log_conflict(retry_state: RetryCallState):
        logger.warning(
            f"⚠️ Conflicto numerando {label} "
            f"(intento {retry_state.attempt_number}/{max_retries}): {retry_state.outcome.exception()}"
        )

    try:
        async for state in AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_incrementing(start=0.01, increment=0.01),
            retry=retry_if_exception_type(CounterConflict),
            before_sleep=log_conflict,
        ):
            with state:
                result = await attempt()
    except RetryError as e:
        logger.error(f"❌ Numeración abortada para {label} tras {max_retries} intentos")
        raise NumberingContention(
            f"No se pudo asignar número ({label}) tras {max_retries} intentos"
        ) from e.last_attempt.exception()

    return result


class InvoiceNumbering:
    """Emite números de factura correlativos sobre un ``SequenceCounter``."""

    def __init__(self, counter: SequenceCounter, settings: LedgerSettings = None):
        self.counter = counter
        self.settings = settings or LedgerSettings()

    def format(self, series: str, sequence: int) -> str:
        return format_invoice_number(series, sequence, self.settings.number_width)

    def build(self, key: CounterKey, sequence: int) -> InvoiceNumber:
        return InvoiceNumber(
            issuer_id=key.issuer_id,
            series=key.series,
            sequence=sequence,
            formatted=self.format(key.series, sequence),
        )

    async def issue(self, issuer_id: str, series: str = None, origin: int = None) -> InvoiceNumber:
        """
        Siguiente número para (emisor, serie).

        Raises:
            InvalidSeries: serie mal formada.
            NumberingContention: conflictos persistentes.
            StorageUnavailable: el contador no responde.
        """
        if not issuer_id:
            raise ValueError("issuer_id es obligatorio")
        key = CounterKey(str(issuer_id), normalize_series(series or self.settings.default_series))
        origin = origin or self.settings.sequence_origin

        sequence = await retrying(
            lambda: self.counter.next_value(key, origin),
            self.settings.numbering_max_retries,
            label=f"{key.issuer_id}/{key.series}",
        )
        number = self.build(key, sequence)
        logger.info(f"🧾 Número emitido: {number.formatted} (emisor {key.issuer_id})")
        return number
