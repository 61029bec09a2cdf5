"""Form layer for the transaction/receipts page.

Turns the submitted field values into an immutable :class:`FormState` after
every edit: the values to redisplay, per-field errors, the snapshot handed to
the reconciler and the resulting remaining balance.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from amounts import AmountError, Money, parse_money
from logging_setup import get_logger
from reconcile import (
    Absent,
    AmountState,
    LineStatus,
    RawText,
    ReceiptLine,
    Resolved,
    TransactionSnapshot,
    compute_remaining,
)

logger = get_logger("receipt_form.form_state")

BLANK = "can't be blank"
INVALID = "is invalid"

_NAME_RE = re.compile(r"^(?P<root>[^\[\]]+)(?P<keys>(?:\[[^\[\]]*\])*)$")
_KEY_RE = re.compile(r"\[([^\[\]]*)\]")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$", re.ASCII)


class FormInvalidError(Exception):
    def __init__(self, errors: Mapping[str, str]):
        self.errors = dict(errors)
        super().__init__("Form has errors: " + ", ".join(f"{k} {v}" for k, v in self.errors.items()))


# -----------------------------
# Committed values
# -----------------------------

@dataclass(frozen=True, slots=True)
class Receipt:
    id: str
    number: str
    amount: Money


@dataclass(frozen=True, slots=True)
class Transaction:
    id: str
    date: date
    description: str
    amount: Money
    receipts: tuple[Receipt, ...] = ()


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_date(value: str) -> date:
    if not _DATE_RE.match(value):
        raise ValueError(f"date must be YYYY-MM-DD: {value!r}")
    return datetime.strptime(value, "%Y-%m-%d").date()


def seed_transaction(currency: str = "GBP", today: date | None = None) -> Transaction:
    """Starting transaction for a new page session: 100.00 with one 10.00 receipt."""
    return Transaction(
        id=_new_id(),
        date=today or date.today(),
        description="Test transaction",
        amount=Money(100_00, currency),
        receipts=(Receipt(id=_new_id(), number="1", amount=Money(10_00, currency)),),
    )


# -----------------------------
# Form state
# -----------------------------

@dataclass(frozen=True, slots=True)
class ReceiptRow:
    id: str
    index: int
    number: str
    amount: AmountState
    status: LineStatus
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def removed(self) -> bool:
        return self.status is LineStatus.REMOVED

    @property
    def amount_text(self) -> str:
        if isinstance(self.amount, Resolved):
            return self.amount.money.to_input()
        if isinstance(self.amount, RawText):
            return self.amount.text
        return ""


@dataclass(frozen=True, slots=True)
class FormState:
    transaction: Transaction
    values: dict[str, str]
    rows: tuple[ReceiptRow, ...]
    snapshot: TransactionSnapshot
    remaining: Money
    errors: dict[str, str] = field(default_factory=dict)
    balance_error: str | None = None

    @property
    def valid(self) -> bool:
        if self.errors or self.balance_error:
            return False
        return not any(row.errors for row in self.rows if not row.removed)

    @property
    def balanced(self) -> bool:
        return self.balance_error is None and self.remaining.is_zero()

    @property
    def currency(self) -> str:
        return self.transaction.amount.currency


def _snapshot(total: AmountState, rows: Iterable[ReceiptRow], currency: str) -> TransactionSnapshot:
    lines = tuple(ReceiptLine(id=row.id, amount=row.amount, status=row.status) for row in rows)
    return TransactionSnapshot(total=total, lines=lines, default_currency=currency)


def initial_state(transaction: Transaction) -> FormState:
    rows = tuple(
        ReceiptRow(id=r.id, index=i, number=r.number, amount=Resolved(r.amount), status=LineStatus.ACTIVE)
        for i, r in enumerate(transaction.receipts)
    )
    snapshot = _snapshot(Resolved(transaction.amount), rows, transaction.amount.currency)
    return FormState(
        transaction=transaction,
        values={
            "date": transaction.date.isoformat(),
            "description": transaction.description,
            "amount": transaction.amount.to_input(),
        },
        rows=rows,
        snapshot=snapshot,
        remaining=compute_remaining(snapshot),
    )


# -----------------------------
# Submitted values
# -----------------------------

def _assign(target: dict[str, Any], keys: list[str], value: str) -> None:
    key, rest = keys[0], keys[1:]
    if not rest:
        target[key] = value
    elif rest == [""]:
        bucket = target.setdefault(key, [])
        if isinstance(bucket, list):
            bucket.append(value)
    else:
        child = target.setdefault(key, {})
        if isinstance(child, dict):
            _assign(child, rest, value)


def parse_form_params(form: Any, root: str = "transaction") -> dict[str, Any]:
    """Decode bracketed field names into nested params.

    ``transaction[receipts][0][amount]=5`` becomes
    ``{"receipts": {"0": {"amount": "5"}}}`` and ``transaction[receipts_sort][]``
    entries are collected into a list. Accepts a werkzeug ``MultiDict`` or a
    plain iterable of ``(name, value)`` pairs.
    """

    if hasattr(form, "items") and hasattr(form, "getlist"):
        items = form.items(multi=True)
    elif isinstance(form, Mapping):
        items = form.items()
    else:
        items = form

    params: dict[str, Any] = {}
    for name, value in items:
        m = _NAME_RE.match(name)
        if not m or m["root"] != root:
            continue
        keys = _KEY_RE.findall(m["keys"])
        if not keys or keys[0] == "":
            continue
        _assign(params, keys, value)
    return params


def _row_order(submitted: Mapping[str, Any], sort: list[str]) -> list[str | None]:
    """Submitted indices in display order; ``None`` marks a row to add."""
    order: list[str | None] = []
    seen = set()
    for entry in sort:
        if entry in submitted:
            if entry not in seen:
                order.append(entry)
                seen.add(entry)
        else:
            order.append(None)
    rest = sorted(
        (k for k in submitted if k not in seen),
        key=lambda k: (not k.isdecimal(), int(k) if k.isdecimal() else 0, k),
    )
    return order + rest


def _amount_error(amount: AmountState, currency: str) -> str | None:
    if isinstance(amount, Absent) or (isinstance(amount, RawText) and not amount.text):
        return BLANK
    if isinstance(amount, RawText):
        try:
            parse_money(amount.text, currency)
        except AmountError:
            return INVALID
    return None


def _validate(values: Mapping[str, str], total: AmountState, currency: str) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not values["date"]:
        errors["date"] = BLANK
    else:
        try:
            _parse_date(values["date"])
        except ValueError:
            errors["date"] = INVALID
    if not values["description"]:
        errors["description"] = BLANK
    amount_error = _amount_error(total, currency)
    if amount_error:
        errors["amount"] = amount_error
    return errors


def _validate_row(number: str, amount: AmountState, currency: str) -> dict[str, str]:
    errors: dict[str, str] = {}
    if not number:
        errors["number"] = BLANK
    amount_error = _amount_error(amount, currency)
    if amount_error:
        errors["amount"] = amount_error
    return errors


def _text(fields: Mapping[str, Any], key: str) -> str | None:
    """A submitted scalar field; nested or list values count as not submitted."""
    value = fields.get(key)
    return value if isinstance(value, str) else None


def _as_list(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(v) for v in value]
    return []


def apply_edit(previous: FormState, params: Mapping[str, Any]) -> FormState:
    """Build the state that follows ``previous`` after one edit event.

    Rows in ``receipts_drop`` stay in the sequence tagged as removed until the
    next commit; ``receipts_restore`` undoes a drop. Sort entries that are not
    submitted indices add a blank row.
    """

    transaction = previous.transaction
    currency = transaction.amount.currency
    committed = {r.id: r for r in transaction.receipts}

    submitted = params.get("receipts")
    if not isinstance(submitted, dict):
        submitted = {}
    sort = _as_list(params.get("receipts_sort"))
    drop = set(_as_list(params.get("receipts_drop"))) - set(_as_list(params.get("receipts_restore")))
    has_receipt_data = any(k in params for k in ("receipts", "receipts_sort", "receipts_drop"))

    # (id, number, amount, status) before indices are assigned
    pending: list[tuple[str, str, AmountState, LineStatus]] = []
    if not has_receipt_data:
        for r in transaction.receipts:
            pending.append((r.id, r.number, Resolved(r.amount), LineStatus.ACTIVE))
    else:
        for key in _row_order(submitted, sort):
            if key is None:
                pending.append((_new_id(), "", Absent(), LineStatus.NEW))
                continue
            fields = submitted[key] if isinstance(submitted[key], dict) else {}
            row_id = (_text(fields, "id") or "").strip() or _new_id()
            base = committed.get(row_id)
            amount_text = _text(fields, "amount")
            if amount_text is not None:
                amount: AmountState = RawText(amount_text.strip())
            elif base is not None:
                amount = Resolved(base.amount)
            else:
                amount = Absent()
            number = _text(fields, "number")
            if number is None:
                number = base.number if base is not None else ""
            number = number.strip()
            if key in drop:
                status = LineStatus.REMOVED
            elif base is not None:
                status = LineStatus.ACTIVE
            else:
                status = LineStatus.NEW
            pending.append((row_id, number, amount, status))

        seen_ids = {p[0] for p in pending}
        for r in transaction.receipts:
            if r.id not in seen_ids:
                pending.append((r.id, r.number, Resolved(r.amount), LineStatus.REMOVED))

    rows = tuple(
        ReceiptRow(
            id=row_id,
            index=i,
            number=number,
            amount=amount,
            status=status,
            errors={} if status is LineStatus.REMOVED else _validate_row(number, amount, currency),
        )
        for i, (row_id, number, amount, status) in enumerate(pending)
    )

    values = {
        "date": (params.get("date") if isinstance(params.get("date"), str) else previous.values["date"]).strip(),
        "description": (
            params.get("description") if isinstance(params.get("description"), str) else previous.values["description"]
        ).strip(),
    }
    if isinstance(params.get("amount"), str):
        total: AmountState = RawText(params["amount"].strip())
        values["amount"] = total.text
    else:
        total = Resolved(transaction.amount)
        values["amount"] = transaction.amount.to_input()

    snapshot = _snapshot(total, rows, currency)
    remaining = previous.remaining
    balance_error = None
    try:
        remaining = compute_remaining(snapshot)
    except AmountError as exc:
        balance_error = str(exc)
        logger.warning("keeping remaining balance at %s: %s", remaining, exc)

    errors = _validate(values, total, currency)
    logger.debug(
        "edit on %s: %d rows (%d removed), remaining %s, errors %s",
        transaction.id,
        len(rows),
        sum(1 for row in rows if row.removed),
        remaining,
        errors,
    )
    return FormState(
        transaction=transaction,
        values=values,
        rows=rows,
        snapshot=snapshot,
        remaining=remaining,
        errors=errors,
        balance_error=balance_error,
    )


def commit(state: FormState) -> Transaction:
    """Return the committed transaction for a valid state.

    Removed rows are dropped and the rest keep their display order. Raises
    :class:`FormInvalidError` when any field or the balance has an error.
    """

    if not state.valid:
        errors = dict(state.errors)
        for row in state.rows:
            if not row.removed:
                errors.update({f"receipts[{row.index}][{k}]": v for k, v in row.errors.items()})
        if state.balance_error:
            errors["remaining"] = state.balance_error
        raise FormInvalidError(errors)

    total = state.snapshot.total
    amount = total.money if isinstance(total, Resolved) else parse_money(state.values["amount"], state.currency)
    receipts = []
    for row in state.rows:
        if row.removed:
            continue
        money = row.amount.money if isinstance(row.amount, Resolved) else parse_money(row.amount_text, amount.currency)
        receipts.append(Receipt(id=row.id, number=row.number, amount=money))

    transaction = Transaction(
        id=state.transaction.id,
        date=_parse_date(state.values["date"]),
        description=state.values["description"],
        amount=amount,
        receipts=tuple(receipts),
    )
    logger.info("committed transaction %s with %d receipts", transaction.id, len(receipts))
    return transaction
