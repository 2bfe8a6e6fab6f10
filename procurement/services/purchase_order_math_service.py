from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from procurement.config import settings
from procurement.errors import ValidationError
from procurement.models import PurchaseOrderStatus

CENT = Decimal('0.01')


@dataclass(frozen=True)
class ApprovalParams:
    threshold: Decimal = Decimal('5000.00')


@dataclass(frozen=True)
class LineAmountInput:
    quantity_ordered: Decimal
    unit_cost: Decimal


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal
    requires_approval: bool


@dataclass(frozen=True)
class LineFulfillment:
    quantity_ordered: Decimal
    quantity_received: Decimal


def _validate_params(params: ApprovalParams) -> None:
    if params.threshold < 0:
        raise ValueError('Approval threshold cannot be negative')


def approval_params_from_settings() -> ApprovalParams:
    params = ApprovalParams(threshold=Decimal(settings.approval_threshold))
    _validate_params(params)
    return params


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_line_total(line: LineAmountInput) -> Decimal:
    if line.quantity_ordered <= 0:
        raise ValidationError('Ordered quantity must be greater than zero')
    if line.unit_cost < 0:
        raise ValidationError('Unit cost cannot be negative')
    return _money(Decimal(line.quantity_ordered) * Decimal(line.unit_cost))


def compute_order_totals(
    lines: Iterable[LineAmountInput],
    params: ApprovalParams,
    *,
    tax_amount: Decimal = Decimal('0'),
    shipping_amount: Decimal = Decimal('0'),
) -> OrderTotals:
    _validate_params(params)
    if tax_amount < 0:
        raise ValidationError('Tax amount cannot be negative')
    if shipping_amount < 0:
        raise ValidationError('Shipping amount cannot be negative')

    subtotal = sum((compute_line_total(line) for line in lines), Decimal('0'))
    total = _money(subtotal + Decimal(tax_amount) + Decimal(shipping_amount))
    return OrderTotals(
        subtotal=_money(subtotal),
        tax_amount=_money(tax_amount),
        shipping_amount=_money(shipping_amount),
        total_amount=total,
        requires_approval=total >= params.threshold,
    )


def derive_fulfillment_status(lines: list[LineFulfillment]) -> PurchaseOrderStatus | None:
    """Aggregate receiving status for a PO, or None when nothing has arrived."""
    if not lines:
        return None
    if all(line.quantity_received >= line.quantity_ordered for line in lines):
        return PurchaseOrderStatus.RECEIVED
    if any(line.quantity_received > 0 for line in lines):
        return PurchaseOrderStatus.PARTIALLY_RECEIVED
    return None


def is_over_received(line: LineFulfillment, *, flag_ratio: Decimal) -> bool:
    return line.quantity_received > line.quantity_ordered * flag_ratio
