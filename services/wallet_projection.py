"""
============================================================================
Settlement Pipeline - Wallet Projection and Data Profile
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Decimal Integrity: Balances derived with decimal.Decimal, ROUND_HALF_EVEN

WALLET PROJECTION:
    The wallet table is a materialized view of the ledger, tolerated stale
    for display and never trusted for a financial decision.
      points       = confirmed points balance from the ledger
      cash_balance = points * effective conversion rate, in cents
    The effective rate is the member's tier rate at the merchant, falling
    back to the merchant base rate. WalletProjection.refresh() is the repair
    operation; nothing else writes these two columns.

DATA PROFILE:
    DataProfiler.run("wallet") scans the projection and reports field
    completeness plus the consistency checks below, each with the offending
    member ids so a caller can jump straight to the records:
      - missing_<field>      critical field empty            (high)
      - conversion_mismatch  |cash - points * rate| > eps    (medium)
      - duplicate_members    member_id on several rows       (high)
      - negative_balances    points or cash_balance < 0      (high)
      - orphaned_merchants   merchant_id not in master       (medium)
    DataProfiler.run("orders") reports completeness only.

============================================================================
"""

from decimal import Decimal
from typing import Optional, Dict, Any, List
from collections import Counter as TallyCounter
import logging

from app.exchange.decimal_gateway import to_usd, to_units
from services.ledger import LedgerService
from services.order_store import SettlementStore
from services.settlement_models import Merchant, WalletRow, utc_now

logger = logging.getLogger(__name__)


AFFECTED_ID_LIMIT = 100

ISSUE_CATEGORY_MISSING = "Missing Critical Data"
ISSUE_CATEGORY_OPTIONAL = "Incomplete Optional Data"
ISSUE_CATEGORY_CONSISTENCY = "Data Consistency"

WALLET_CRITICAL_FIELDS = ("member_id", "member_email", "merchant_id", "merchant_name")
WALLET_OPTIONAL_FIELDS = ("first_name", "last_name", "member_tier")
WALLET_FIELDS = WALLET_CRITICAL_FIELDS + WALLET_OPTIONAL_FIELDS + (
    "points", "cash_balance", "updated_at",
)

ORDER_CRITICAL_FIELDS = ("order_id", "basket_id", "member_id", "merchant_id", "symbol", "broker", "amount")
ORDER_OPTIONAL_FIELDS = ("member_timezone", "broker_order_id")
ORDER_FIELDS = ORDER_CRITICAL_FIELDS + ORDER_OPTIONAL_FIELDS + (
    "executed_price", "executed_shares", "executed_amount", "executed_at",
    "paid_batch_id", "paid_at", "journal_id", "journaled_at",
)


class WalletProjection:
    """
    Recomputes wallet rows from the ledger.

    Side Effects: Overwrites wallet points/cash_balance columns
    """

    def __init__(self, store: SettlementStore, ledger: LedgerService) -> None:
        self._store = store
        self._ledger = ledger

    def expected_cash(self, row: WalletRow, points: Decimal) -> Optional[Decimal]:
        if row.merchant_id is None:
            return None
        merchant = self._store.get_merchant(row.merchant_id)
        if merchant is None:
            return None
        return to_usd(points * merchant.effective_rate(row.member_tier))

    def refresh(self, member_id: str, correlation_id: Optional[str] = None) -> List[WalletRow]:
        """Rebuild every wallet row of one member from confirmed ledger entries."""
        points = self._ledger.points_balance(member_id)
        refreshed = []
        for row in self._store.list_wallet_rows(member_id=member_id):
            cash = self.expected_cash(row, points)
            if cash is None:
                logger.warning(
                    f"[WALLET] Cannot price points, merchant unknown, using ledger cash | "
                    f"member_id={member_id} | merchant_id={row.merchant_id} | "
                    f"record_id={row.record_id} | correlation_id={correlation_id}"
                )
                cash = self._ledger.cash_balance(member_id)
            refreshed.append(
                self._store.update_wallet_balances(row.record_id, to_units(points), cash)
            )
        logger.info(
            f"[WALLET] Projection refreshed | member_id={member_id} | "
            f"points={points} | rows={len(refreshed)} | correlation_id={correlation_id}"
        )
        return refreshed

    def refresh_all(self, correlation_id: Optional[str] = None) -> int:
        """Refresh every member that has a wallet row. Returns rows rewritten."""
        member_ids = sorted({
            r.member_id for r in self._store.list_wallet_rows() if r.member_id
        })
        return sum(len(self.refresh(m, correlation_id)) for m in member_ids)


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class DataProfiler:
    """
    Deterministic data-quality pass over the wallet projection (and orders).

    Reliability Level: L6 Critical (Sovereign Tier)
    Side Effects: None (read-only)
    """

    SUPPORTED_TABLES = ("wallet", "orders")

    def __init__(self, store: SettlementStore, epsilon: Decimal = Decimal("0.01")) -> None:
        self._store = store
        self._epsilon = Decimal(str(epsilon))

    def run(self, table: str = "wallet", correlation_id: Optional[str] = None) -> Dict[str, Any]:
        if table not in self.SUPPORTED_TABLES:
            raise ValueError(
                f"Unsupported table {table!r}; expected one of {self.SUPPORTED_TABLES}"
            )

        if table == "wallet":
            raw_rows = self._store.list_wallet_rows()
            rows = [r.to_dict() for r in raw_rows]
            profile = self._profile(
                table, rows, WALLET_FIELDS, WALLET_CRITICAL_FIELDS, WALLET_OPTIONAL_FIELDS
            )
            if rows:
                self._wallet_consistency(raw_rows, profile)
        else:
            rows = [o.to_dict() for o in self._store.list_orders()]
            profile = self._profile(
                table, rows, ORDER_FIELDS, ORDER_CRITICAL_FIELDS, ORDER_OPTIONAL_FIELDS
            )

        if rows:
            profile["recommendations"] = self._recommendations(profile)
        profile["issues_by_category"] = {
            k: v for k, v in profile["issues_by_category"].items() if v
        }

        logger.info(
            f"[DATA-PROFILE] Scan complete | table={table} | "
            f"total_records={profile['total_records']} | "
            f"completeness_score={profile['completeness_score']} | "
            f"critical_issues={len(profile['critical_issues'])} | "
            f"correlation_id={correlation_id}"
        )
        return profile

    # -------------------------------------------------------------------------
    # Completeness
    # -------------------------------------------------------------------------

    def _profile(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        fields: tuple,
        critical: tuple,
        optional: tuple,
    ) -> Dict[str, Any]:
        total = len(rows)
        profile: Dict[str, Any] = {
            "table": table,
            "total_records": total,
            "complete_records": 0,
            "incomplete_records": 0,
            "completeness_score": 0,
            "field_analysis": [],
            "critical_issues": [],
            "affected_members": {},
            "issues_by_category": {
                ISSUE_CATEGORY_MISSING: [],
                ISSUE_CATEGORY_OPTIONAL: [],
                ISSUE_CATEGORY_CONSISTENCY: [],
            },
            "recommendations": [f"No records found in the {table} table"] if total == 0 else [],
            "scan_timestamp": utc_now().strftime("%Y-%m-%d %H:%M:%S"),
        }
        if total == 0:
            return profile

        percents = []
        for name in fields:
            missing_ids = [r.get("member_id") for r in rows if _is_missing(r.get(name))]
            missing = len(missing_ids)
            populated = total - missing
            percent = round(populated / total * 100, 2)
            percents.append(percent)
            profile["field_analysis"].append({
                "field_name": name,
                "populated_count": populated,
                "missing_count": missing,
                "completeness_percent": percent,
            })

            if name in critical and missing:
                issue_key = f"missing_{name}"
                self._add_issue(
                    profile,
                    issue_key=issue_key,
                    field_name=name,
                    issue_type="missing_critical_data",
                    description="Critical field has missing values",
                    severity="high",
                    member_ids=missing_ids,
                    total_count=missing,
                )
                profile["issues_by_category"][ISSUE_CATEGORY_MISSING].append(
                    f"{name}: {missing} records missing (critical field)"
                )
            if name in optional and missing and percent < 50:
                profile["issues_by_category"][ISSUE_CATEGORY_OPTIONAL].append(
                    f"{name}: Only {round(percent, 1)}% complete ({missing} missing)"
                )

        complete = sum(
            1 for r in rows if all(not _is_missing(r.get(f)) for f in critical)
        )
        profile["complete_records"] = complete
        profile["incomplete_records"] = total - complete
        profile["completeness_score"] = round(sum(percents) / len(percents), 2)
        return profile

    @staticmethod
    def _add_issue(
        profile: Dict[str, Any],
        issue_key: str,
        field_name: str,
        issue_type: str,
        description: str,
        severity: str,
        member_ids: List[Any],
        total_count: int,
        details: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        shown = [m for m in member_ids if m is not None][:AFFECTED_ID_LIMIT]
        entry: Dict[str, Any] = {
            "field": field_name,
            "issue_type": issue_type,
            "member_ids": shown,
            "total_count": total_count,
            "showing_count": len(shown),
        }
        if details is not None:
            entry["details"] = details[:AFFECTED_ID_LIMIT]
        profile["affected_members"][issue_key] = entry
        profile["critical_issues"].append({
            "field": field_name,
            "description": description,
            "count": total_count,
            "severity": severity,
            "issue_key": issue_key,
        })

    # -------------------------------------------------------------------------
    # Wallet consistency checks
    # -------------------------------------------------------------------------

    def _wallet_consistency(self, rows: List[WalletRow], profile: Dict[str, Any]) -> None:
        merchants: Dict[str, Optional[Merchant]] = {}

        def merchant_of(merchant_id: str) -> Optional[Merchant]:
            if merchant_id not in merchants:
                merchants[merchant_id] = self._store.get_merchant(merchant_id)
            return merchants[merchant_id]

        consistency = profile["issues_by_category"][ISSUE_CATEGORY_CONSISTENCY]

        mismatches = []
        for row in rows:
            if row.points is None or row.cash_balance is None or _is_missing(row.merchant_id):
                continue
            merchant = merchant_of(row.merchant_id)
            if merchant is None:
                continue
            rate = merchant.effective_rate(row.member_tier)
            expected = row.points * rate
            if abs(row.cash_balance - expected) > self._epsilon:
                mismatches.append({
                    "member_id": row.member_id,
                    "record_id": row.record_id,
                    "points": str(row.points),
                    "cash_balance": str(row.cash_balance),
                    "member_tier": row.member_tier,
                    "conversion_rate": str(rate),
                    "expected_cash": str(to_usd(expected)),
                })
        if mismatches:
            self._add_issue(
                profile,
                issue_key="conversion_mismatch",
                field_name="cash_balance / points",
                issue_type="data_consistency",
                description="Cash balance does not match points * conversion_rate",
                severity="medium",
                member_ids=[m["member_id"] for m in mismatches],
                total_count=len(mismatches),
                details=mismatches,
            )
            consistency.append(
                f"Points/Cash mismatch: {len(mismatches)} records have inconsistent "
                f"conversion calculations"
            )
        profile["conversion_mismatch_count"] = len(mismatches)

        tally = TallyCounter(r.member_id for r in rows if not _is_missing(r.member_id))
        duplicates = sorted((m, c) for m, c in tally.items() if c > 1)
        if duplicates:
            self._add_issue(
                profile,
                issue_key="duplicate_members",
                field_name="member_id",
                issue_type="duplicate_records",
                description="Duplicate member_id entries found",
                severity="high",
                member_ids=[m for m, _ in duplicates],
                total_count=sum(c for _, c in duplicates),
                details=[{"member_id": m, "dup_count": c} for m, c in duplicates],
            )
            consistency.append(
                f"Duplicate members: {len(duplicates)} member IDs appear multiple times"
            )
        profile["duplicate_member_count"] = len(duplicates)

        negatives = [
            r for r in rows
            if (r.points is not None and r.points < 0)
            or (r.cash_balance is not None and r.cash_balance < 0)
        ]
        if negatives:
            self._add_issue(
                profile,
                issue_key="negative_balances",
                field_name="points / cash_balance",
                issue_type="data_consistency",
                description="Negative points or cash balance",
                severity="high",
                member_ids=[r.member_id for r in negatives],
                total_count=len(negatives),
                details=[
                    {
                        "member_id": r.member_id,
                        "record_id": r.record_id,
                        "points": str(r.points) if r.points is not None else None,
                        "cash_balance": (
                            str(r.cash_balance) if r.cash_balance is not None else None
                        ),
                    }
                    for r in negatives
                ],
            )
            consistency.append(f"Negative balances: {len(negatives)} records below zero")

        orphans = [
            r for r in rows
            if not _is_missing(r.merchant_id) and merchant_of(r.merchant_id) is None
        ]
        if orphans:
            self._add_issue(
                profile,
                issue_key="orphaned_merchants",
                field_name="merchant_id",
                issue_type="orphaned_reference",
                description="merchant_id not present in merchant master",
                severity="medium",
                member_ids=[r.member_id for r in orphans],
                total_count=len(orphans),
                details=[
                    {"member_id": r.member_id, "merchant_id": r.merchant_id}
                    for r in orphans
                ],
            )
            consistency.append(
                f"Orphaned merchants: {len(orphans)} records reference unknown merchants"
            )

    @staticmethod
    def _recommendations(profile: Dict[str, Any]) -> List[str]:
        recommendations = []
        issues = profile["critical_issues"]
        if issues:
            recommendations.append(
                f"Address critical data issues first - {len(issues)} high-priority issues found"
            )
        if profile["incomplete_records"]:
            recommendations.append(
                f"Review and complete {profile['incomplete_records']} incomplete records"
            )
        if profile.get("conversion_mismatch_count"):
            recommendations.append(
                f"Recalculate cash_balance for {profile['conversion_mismatch_count']} "
                f"records with conversion mismatches"
            )
        if profile.get("duplicate_member_count"):
            recommendations.append(
                f"Investigate and resolve {profile['duplicate_member_count']} "
                f"duplicate member_id entries"
            )
        score = profile["completeness_score"]
        if score < 80:
            recommendations.append(
                f"Overall data completeness is {round(score, 1)}% - aim for 90%+"
            )
        elif score >= 95:
            recommendations.append(
                "Excellent data quality! Maintain current data entry standards"
            )
        return recommendations


__all__ = [
    "WalletProjection",
    "DataProfiler",
    "WALLET_CRITICAL_FIELDS",
    "AFFECTED_ID_LIMIT",
]
