"""
============================================================================
Settlement Pipeline - Broker Payments (ACH Export)
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Row amounts are cent-rounded; the ACH aggregate is the
                   sum of the rendered rows
Traceability: All operations include correlation_id for audit

PAYMENT FLOW (merchant pays broker for executed order volume):
    get_payments            unpaid executed|confirmed orders + per-broker summary
    export_broker_payment   detail CSV (one row per order) + ACH CSV (one
                            aggregate row). Pure read: nothing is written,
                            so an unsent export can be regenerated.
    confirm_broker_payment  the separate confirmed-payment step: stamps
                            paid_flag/paid_batch_id on the exported orders.

RECONCILIATION:
    Both files are parsed back after rendering. The ACH payment_amount must
    equal the sum of the detail amount_cash column exactly and the row
    count must equal order_count; otherwise the whole export fails with
    STL-004 and no file is returned.

ERROR CODES:
    - STL-004: Detail rows and ACH aggregate disagree
    - STL-040: Broker master record missing (no ACH bank details)

============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Iterable
import csv
import io
import logging
import re
import uuid

from app.exchange.decimal_gateway import format_usd, sum_usd, to_decimal
from app.observability.settlement_metrics import (
    record_ach_export,
    record_reconciliation_failure,
)
from services.order_store import SettlementStore
from services.settlement_engine import PAYABLE_STATUSES, PaymentMarkResult, SettlementEngine
from services.settlement_errors import (
    ReconciliationError,
    SettlementConfigurationError,
    SettlementErrorCode,
)
from services.settlement_models import BrokerMaster, Order, utc_now

logger = logging.getLogger(__name__)


DETAIL_COLUMNS = [
    "batch_id", "merchant_id", "broker", "member_id", "order_id", "basket_id",
    "symbol", "shares", "amount_cash", "points_used", "executed_at", "amount_source",
]
ACH_COLUMNS = [
    "batch_id", "merchant_id", "broker_id", "broker_name", "payment_amount",
    "bank_name", "routing_number", "account_number", "account_type", "order_count",
]

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9]")


def make_batch_id(merchant_id: str, broker: str, now: Optional[datetime] = None) -> str:
    """ACH_<merchant>_<broker>_<YYYYmmdd_HHMMSS>, alphanumerics only in each part."""
    stamp = (now or utc_now()).strftime("%Y%m%d_%H%M%S")
    return f"ACH_{_UNSAFE_CHARS.sub('', merchant_id)}_{_UNSAFE_CHARS.sub('', broker)}_{stamp}"


@dataclass
class BrokerPaymentExport:
    batch_id: Optional[str]
    merchant_id: str
    broker: str
    order_count: int = 0
    total_amount: Decimal = Decimal("0.00")
    order_ids: List[str] = field(default_factory=list)
    mixed_sourcing: bool = False
    detail_csv: Optional[str] = None
    ach_csv: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "order_count": self.order_count,
            "total_amount": str(self.total_amount),
            "order_ids": list(self.order_ids),
            "mixed_sourcing": self.mixed_sourcing,
            "detail_csv": self.detail_csv,
            "ach_csv": self.ach_csv,
        }


class BrokerPaymentService:
    """
    Merchant-to-broker payment files and the confirmed-payment step.

    Side Effects: export is read-only; confirm writes payment marks
    """

    def __init__(self, store: SettlementStore, engine: SettlementEngine) -> None:
        self._store = store
        self._engine = engine

    def _unpaid(self, merchant_id: str, broker: Optional[str] = None) -> List[Order]:
        return self._store.list_orders(
            statuses=PAYABLE_STATUSES, merchant_id=merchant_id, broker=broker, paid=False
        )

    def get_payments(self, merchant_id: str) -> Dict[str, Any]:
        orders = self._unpaid(merchant_id)
        by_broker: Dict[str, List[Order]] = {}
        for order in orders:
            by_broker.setdefault(order.broker, []).append(order)

        summary = []
        for broker in sorted(by_broker):
            rows = by_broker[broker]
            master = self._store.get_broker(broker)
            summary.append({
                "broker": broker,
                "broker_id": master.broker_id if master else None,
                "broker_name": master.broker_name if master else broker,
                "ach_bank_name": master.ach_bank_name if master else None,
                "ach_routing_num": master.ach_routing_num if master else None,
                "ach_account_num": master.ach_account_num if master else None,
                "ach_account_type": master.ach_account_type if master else None,
                "order_count": len(rows),
                "total_amount": str(sum_usd(o.payable_amount for o in rows)),
            })

        return {
            "merchant_id": merchant_id,
            "orders": [o.to_dict() for o in orders],
            "summary": summary,
            "order_count": len(orders),
            "total_amount": str(sum_usd(o.payable_amount for o in orders)),
        }

    def export_broker_payment(
        self,
        merchant_id: str,
        broker: str,
        correlation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BrokerPaymentExport:
        """
        Render the detail and ACH files for one broker.

        Raises:
            SettlementConfigurationError: no broker master record
            ReconciliationError: rendered files disagree
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        orders = self._unpaid(merchant_id, broker)
        if not orders:
            logger.info(
                f"[ACH-EXPORT] Nothing to export | merchant_id={merchant_id} | broker={broker} | "
                f"correlation_id={correlation_id}"
            )
            record_ach_export("empty")
            return BrokerPaymentExport(batch_id=None, merchant_id=merchant_id, broker=broker)

        master = self._store.get_broker(broker)
        if master is None:
            record_ach_export("no_broker_master")
            raise SettlementConfigurationError(
                f"Broker {broker} has no master record with ACH bank details"
            )

        batch_id = make_batch_id(merchant_id, broker, now)
        total = sum_usd(o.payable_amount for o in orders)
        detail_csv = self._render_detail(batch_id, merchant_id, orders)
        ach_csv = self._render_ach(batch_id, merchant_id, master, total, len(orders))

        self._verify(batch_id, detail_csv, ach_csv, len(orders), correlation_id)

        sources = {o.amount_source for o in orders}
        export = BrokerPaymentExport(
            batch_id=batch_id,
            merchant_id=merchant_id,
            broker=broker,
            order_count=len(orders),
            total_amount=total,
            order_ids=[o.order_id for o in orders],
            mixed_sourcing=len(sources) > 1,
            detail_csv=detail_csv,
            ach_csv=ach_csv,
        )
        if export.mixed_sourcing:
            logger.warning(
                f"[ACH-EXPORT] Mixed amount sources in batch | batch_id={batch_id} | "
                f"fallback_orders={sum(1 for o in orders if o.amount_source == 'amount')} | "
                f"correlation_id={correlation_id}"
            )
        record_ach_export("success")
        logger.info(
            f"[ACH-EXPORT] Export generated | batch_id={batch_id} | merchant_id={merchant_id} | "
            f"broker={broker} | orders={len(orders)} | total_amount={total} | "
            f"correlation_id={correlation_id}"
        )
        return export

    @staticmethod
    def _render_detail(batch_id: str, merchant_id: str, orders: List[Order]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(DETAIL_COLUMNS)
        for order in orders:
            shares = order.executed_shares if order.executed_shares is not None else order.shares
            writer.writerow([
                batch_id,
                merchant_id,
                order.broker,
                order.member_id,
                order.order_id,
                order.basket_id,
                order.symbol,
                str(shares.normalize()) if shares else "0",
                format_usd(order.payable_amount),
                order.points_used,
                order.executed_at.isoformat() if order.executed_at else "",
                order.amount_source,
            ])
        return buffer.getvalue()

    @staticmethod
    def _render_ach(
        batch_id: str,
        merchant_id: str,
        master: BrokerMaster,
        total: Decimal,
        order_count: int,
    ) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(ACH_COLUMNS)
        writer.writerow([
            batch_id,
            merchant_id,
            master.broker_id,
            master.broker_name,
            format_usd(total),
            master.ach_bank_name or "",
            master.ach_routing_num or "",
            master.ach_account_num or "",
            master.ach_account_type or "",
            order_count,
        ])
        return buffer.getvalue()

    @staticmethod
    def _verify(
        batch_id: str,
        detail_csv: str,
        ach_csv: str,
        order_count: int,
        correlation_id: str,
    ) -> None:
        detail_rows = list(csv.DictReader(io.StringIO(detail_csv)))
        ach_rows = list(csv.DictReader(io.StringIO(ach_csv)))

        detail_sum = sum_usd(to_decimal(r["amount_cash"]) for r in detail_rows)
        problems = []
        if len(ach_rows) != 1:
            problems.append(f"ach_rows={len(ach_rows)}")
        else:
            ach_amount = to_decimal(ach_rows[0]["payment_amount"])
            if ach_amount != detail_sum:
                problems.append(f"ach_amount={ach_amount} detail_sum={detail_sum}")
            if int(ach_rows[0]["order_count"]) != len(detail_rows):
                problems.append(f"ach_order_count={ach_rows[0]['order_count']}")
        if len(detail_rows) != order_count:
            problems.append(f"detail_rows={len(detail_rows)} orders={order_count}")

        if problems:
            record_reconciliation_failure("ach_export")
            record_ach_export("reconciliation_failed")
            logger.error(
                f"[{SettlementErrorCode.RECONCILIATION_FAILED}] ACH export does not reconcile | "
                f"batch_id={batch_id} | {' | '.join(problems)} | correlation_id={correlation_id}"
            )
            raise ReconciliationError(
                f"Export {batch_id} does not reconcile: {', '.join(problems)}"
            )

    def confirm_broker_payment(
        self,
        merchant_id: str,
        broker: str,
        batch_id: str,
        order_ids: Optional[Iterable[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentMarkResult:
        """
        Mark the exported orders paid. No member ledger entries are written:
        the ACH moves merchant money to the broker, not member cash.
        """
        return self._engine.mark_batch_paid(
            merchant_id, broker, batch_id, order_ids=order_ids, correlation_id=correlation_id
        )

    def cancel_broker_payment(
        self, batch_id: str, correlation_id: Optional[str] = None
    ) -> PaymentMarkResult:
        return self._engine.cancel_payment(batch_id, correlation_id=correlation_id)


__all__ = [
    "BrokerPaymentService",
    "BrokerPaymentExport",
    "DETAIL_COLUMNS",
    "ACH_COLUMNS",
    "make_batch_id",
]
