"""Remaining-to-allocate balance for a transaction and its receipt lines."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from amounts import CurrencyMismatchError, MalformedAmountError, Money, parse_money
from logging_setup import get_logger

__all__ = [
    "Absent",
    "AmountState",
    "CurrencyMismatchError",
    "LineStatus",
    "MalformedAmountError",
    "RawText",
    "ReceiptLine",
    "Resolved",
    "TransactionSnapshot",
    "compute_remaining",
]

logger = get_logger("receipt_form.reconcile")


@dataclass(frozen=True, slots=True)
class Resolved:
    money: Money


@dataclass(frozen=True, slots=True)
class RawText:
    text: str


@dataclass(frozen=True, slots=True)
class Absent:
    pass


AmountState = Resolved | RawText | Absent


class LineStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"
    NEW = "new"


@dataclass(frozen=True, slots=True)
class ReceiptLine:
    id: str
    amount: AmountState
    status: LineStatus = LineStatus.ACTIVE


@dataclass(frozen=True, slots=True)
class TransactionSnapshot:
    """Total plus receipt lines in display order.

    ``default_currency`` applies to a total typed without a currency marker.
    """

    total: AmountState
    lines: tuple[ReceiptLine, ...] = ()
    default_currency: str = "GBP"


def _resolve(amount: AmountState, currency: str) -> Money | None:
    """Money for an amount state, or ``None`` when it carries no value."""
    if isinstance(amount, Resolved):
        return amount.money
    if isinstance(amount, RawText):
        if not amount.text.strip():
            return None
        return parse_money(amount.text, currency)
    return None


def compute_remaining(snapshot: TransactionSnapshot) -> Money:
    """Return the snapshot's total minus every line that is not removed.

    Raises ``CurrencyMismatchError`` when a line is in another currency than
    the total and ``MalformedAmountError`` when raw text does not parse.
    """

    total = _resolve(snapshot.total, snapshot.default_currency)
    if total is None:
        total = Money.zero(snapshot.default_currency)

    allocated = Money.zero(total.currency)
    for line in snapshot.lines:
        if line.status is LineStatus.REMOVED:
            continue
        contribution = _resolve(line.amount, total.currency)
        if contribution is None:
            continue
        logger.debug("line %s (%s) contributes %s", line.id, line.status.value, contribution)
        allocated = allocated.add(contribution)

    return total.subtract(allocated)
