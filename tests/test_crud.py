from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest

from fiscal_core import crud, schemas
from fiscal_core.config import LedgerSettings
from fiscal_core.exceptions import (
    CounterConflict,
    InvalidInvoiceState,
    InvoiceNotFound,
    NumberingContention,
    StorageUnavailable,
)
from fiscal_core.services.numbering import CounterKey, SqlSequenceCounter


def _draft(**overrides) -> schemas.InvoiceDraftCreate:
    data = {
        "recipient_name": "Ana Pérez",
        "recipient_tax_id": "x-1234567-l",
        "concept": "Sesiones de octubre",
        "lines": [
            {"description": "Sesión individual", "quantity": "4", "unit_price": "60.00"},
            {"description": "Informe", "quantity": "1", "unit_price": "25.50"},
        ],
    }
    data.update(overrides)
    return schemas.InvoiceDraftCreate(**data)


async def _configure(db, issuer_id="p1", **overrides):
    data = {
        "tax_id": "12345678-z",
        "legal_name": "Consulta Ana SL",
        "address": "Calle Mayor 1",
        "default_vat_rate": Decimal("21"),
        "default_withholding_rate": Decimal("15"),
    }
    data.update(overrides)
    return await crud.update_billing_settings(db, issuer_id, schemas.BillingSettingsUpdate(**data))


async def test_billing_settings_created_with_defaults(db):
    billing = await crud.get_billing_settings(db, "p1", LedgerSettings(default_series="FA"))

    assert billing.issuer_id == "p1"
    assert billing.series == "FA"
    assert billing.default_vat_rate == Decimal("21")
    assert billing.vat_exempt is False

    again = await crud.get_billing_settings(db, "p1")
    assert again.id == billing.id


async def test_billing_settings_store_normalized_tax_id(db):
    billing = await _configure(db)
    assert billing.tax_id == "12345678Z"


async def test_draft_has_no_number_and_previews_totals(db):
    await _configure(db)

    invoice = await crud.create_draft_invoice(db, "p1", _draft())

    assert invoice.status == crud.DRAFT
    assert invoice.number is None
    assert invoice.sequence is None
    assert invoice.series == "F"
    assert invoice.recipient_tax_id == "X1234567L"
    assert [line.subtotal for line in invoice.lines] == [Decimal("240.00"), Decimal("25.50")]
    assert invoice.base_amount == Decimal("265.50")
    assert invoice.vat_amount == Decimal("55.76")
    assert invoice.withholding_amount == Decimal("39.83")
    assert invoice.total == Decimal("281.43")


async def test_issue_assigns_sequential_numbers_and_snapshots_issuer(db):
    await _configure(db)
    first = await crud.create_draft_invoice(db, "p1", _draft())
    second = await crud.create_draft_invoice(db, "p1", _draft())

    issued = await crud.issue_invoice(db, "p1", first.id, issue_date=date(2024, 10, 1))
    issued_2 = await crud.issue_invoice(db, "p1", second.id)

    assert issued.status == crud.ISSUED
    assert issued.number == "F000001"
    assert issued.sequence == 1
    assert issued.issue_date == date(2024, 10, 1)
    assert issued.issuer_tax_id == "12345678Z"
    assert issued.issuer_legal_name == "Consulta Ana SL"
    assert issued.total == issued.base_amount + issued.vat_amount - issued.withholding_amount
    assert issued_2.number == "F000002"


async def test_issuers_have_independent_counters(db):
    await _configure(db, "p1")
    await _configure(db, "p2", tax_id="B44754299")

    a = await crud.create_draft_invoice(db, "p1", _draft())
    b = await crud.create_draft_invoice(db, "p2", _draft())

    assert (await crud.issue_invoice(db, "p1", a.id)).number == "F000001"
    assert (await crud.issue_invoice(db, "p2", b.id)).number == "F000001"


async def test_issue_uses_issuer_origin_and_draft_series(db):
    await _configure(db, sequence_origin=50)
    invoice = await crud.create_draft_invoice(db, "p1", _draft(series="R"))

    issued = await crud.issue_invoice(db, "p1", invoice.id, LedgerSettings(number_width=4))

    assert issued.number == "R0050"


async def test_exempt_issuer_forces_zero_vat(db):
    await _configure(db, vat_exempt=True, exemption_text="Exento de IVA según Art. 20.Uno.3º Ley 37/1992")

    invoice = await crud.create_draft_invoice(db, "p1", _draft(vat_rate=Decimal("21")))
    issued = await crud.issue_invoice(db, "p1", invoice.id)

    assert issued.vat_exempt is True
    assert issued.vat_amount == Decimal("0.00")
    assert issued.total == Decimal("225.67")
    assert issued.exemption_text.startswith("Exento de IVA")


async def test_draft_cannot_switch_off_issuer_exemption(db):
    await _configure(db, vat_exempt=True, default_withholding_rate=Decimal("0"))
    lines = [{"description": "Sesión individual", "quantity": "1", "unit_price": "100"}]

    invoice = await crud.create_draft_invoice(
        db, "p1", _draft(vat_exempt=False, vat_rate=Decimal("21"), lines=lines)
    )
    assert invoice.vat_exempt is True
    assert invoice.vat_amount == Decimal("0.00")

    issued = await crud.issue_invoice(db, "p1", invoice.id)
    assert issued.vat_amount == Decimal("0.00")
    assert issued.total == Decimal("100.00")


async def test_issuer_exemption_applies_to_pending_drafts(db):
    await _configure(db)
    invoice = await crud.create_draft_invoice(db, "p1", _draft())
    assert invoice.vat_exempt is False

    await _configure(db, vat_exempt=True, exemption_text="Exento de IVA")
    issued = await crud.issue_invoice(db, "p1", invoice.id)

    assert issued.vat_exempt is True
    assert issued.vat_amount == Decimal("0.00")
    assert issued.total == Decimal("225.67")
    assert issued.exemption_text == "Exento de IVA"


async def test_issue_twice_is_rejected_without_consuming_numbers(db, session_factory):
    await _configure(db)
    invoice = await crud.create_draft_invoice(db, "p1", _draft())
    await crud.issue_invoice(db, "p1", invoice.id)

    with pytest.raises(InvalidInvoiceState):
        await crud.issue_invoice(db, "p1", invoice.id)

    assert await SqlSequenceCounter(session_factory).peek(CounterKey("p1", "F")) == 1


async def test_cancelled_numbers_are_never_reused(db):
    await _configure(db)
    first = await crud.create_draft_invoice(db, "p1", _draft())
    await crud.issue_invoice(db, "p1", first.id)

    cancelled = await crud.cancel_invoice(db, "p1", first.id)
    assert cancelled.status == crud.CANCELLED
    assert cancelled.number == "F000001"

    second = await crud.create_draft_invoice(db, "p1", _draft())
    assert (await crud.issue_invoice(db, "p1", second.id)).number == "F000002"


async def test_only_issued_invoices_can_be_cancelled_or_paid(db):
    await _configure(db)
    invoice = await crud.create_draft_invoice(db, "p1", _draft())

    with pytest.raises(InvalidInvoiceState):
        await crud.cancel_invoice(db, "p1", invoice.id)
    with pytest.raises(InvalidInvoiceState):
        await crud.mark_invoice_paid(db, "p1", invoice.id)

    await crud.issue_invoice(db, "p1", invoice.id)
    paid = await crud.mark_invoice_paid(db, "p1", invoice.id)
    assert paid.status == crud.PAID

    assert (await crud.cancel_invoice(db, "p1", invoice.id)).status == crud.CANCELLED


async def test_other_issuers_cannot_touch_the_invoice(db):
    await _configure(db)
    invoice = await crud.create_draft_invoice(db, "p1", _draft())

    with pytest.raises(InvoiceNotFound):
        await crud.issue_invoice(db, "p2", invoice.id)
    with pytest.raises(InvoiceNotFound):
        await crud.get_invoice(db, "p1", invoice.id + 100)


async def test_storage_failure_leaves_the_draft_untouched(db, monkeypatch):
    await _configure(db)
    invoice = await crud.create_draft_invoice(db, "p1", _draft())

    async def unreachable(session, key, origin=1):
        raise StorageUnavailable("counter store unreachable")

    monkeypatch.setattr(SqlSequenceCounter, "increment", staticmethod(unreachable))

    with pytest.raises(StorageUnavailable):
        await crud.issue_invoice(db, "p1", invoice.id)

    reloaded = await crud.get_invoice(db, "p1", invoice.id)
    assert reloaded.status == crud.DRAFT
    assert reloaded.number is None


async def test_persistent_conflict_fails_closed(db, monkeypatch):
    await _configure(db)
    invoice = await crud.create_draft_invoice(db, "p1", _draft())
    calls = []

    async def contended(session, key, origin=1):
        calls.append(key)
        raise CounterConflict("row locked")

    monkeypatch.setattr(SqlSequenceCounter, "increment", staticmethod(contended))

    with pytest.raises(NumberingContention):
        await crud.issue_invoice(db, "p1", invoice.id, LedgerSettings(numbering_max_retries=3))

    assert len(calls) == 3
    reloaded = await crud.get_invoice(db, "p1", invoice.id)
    assert reloaded.status == crud.DRAFT
    assert reloaded.sequence is None


async def _issue_in_own_session(session_factory, issuer_id, invoice_id):
    # Una sesión por petición, como en la API
    async with session_factory() as session:
        invoice = await crud.issue_invoice(session, issuer_id, invoice_id)
        return invoice.issuer_id, invoice.sequence, invoice.number


async def test_concurrent_issuance_gives_a_gapless_sequence(db, session_factory):
    await _configure(db)
    drafts = [await crud.create_draft_invoice(db, "p1", _draft()) for _ in range(6)]

    results = await asyncio.gather(
        *(_issue_in_own_session(session_factory, "p1", draft.id) for draft in drafts)
    )

    assert sorted(sequence for _, sequence, _ in results) == list(range(1, 7))
    assert len({number for _, _, number in results}) == 6
    assert await SqlSequenceCounter(session_factory).peek(CounterKey("p1", "F")) == 6


async def test_concurrent_first_use_of_uninitialized_counters(db, session_factory):
    await _configure(db, "p1")
    await _configure(db, "p2", tax_id="B44754299")
    drafts = [
        (issuer_id, await crud.create_draft_invoice(db, issuer_id, _draft()))
        for issuer_id in ("p1", "p2", "p1", "p2")
    ]

    results = await asyncio.gather(
        *(_issue_in_own_session(session_factory, issuer_id, draft.id) for issuer_id, draft in drafts)
    )

    by_issuer = {}
    for issuer_id, sequence, _ in results:
        by_issuer.setdefault(issuer_id, []).append(sequence)
    assert sorted(by_issuer["p1"]) == [1, 2]
    assert sorted(by_issuer["p2"]) == [1, 2]
