"""
============================================================================
Settlement Pipeline - Runtime Wiring
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)

Builds the object graph shared by the HTTP API and the operator CLI:

    store -> OrderTransitioner (+ TransitionEventBus)
          -> LedgerService, WalletProjection, DataProfiler
          -> SettlementEngine, SellToggleService, JournalEngine,
             BrokerPaymentService

BROKERAGE MODE:
    demo  DemoBrokerage (in memory)
    live  BrokerageClient over HTTP (credentials validated, fail closed)

STORE:
    An explicit store wins; otherwise DATABASE_URL / DB_* selects the SQL
    store, and with neither the in-memory store is used.

============================================================================
"""

from dataclasses import dataclass
from typing import Optional
import logging
import os
import threading

from app.exchange.brokerage_client import BrokerageClient, BrokerageTransferClient
from services.broker_payments import BrokerPaymentService
from services.demo_brokerage import DemoBrokerage
from services.journal_engine import JournalEngine
from services.ledger import LedgerService
from services.order_state_machine import OrderTransitioner
from services.order_store import InMemorySettlementStore, SettlementStore
from services.sell_toggle import SellToggleService
from services.settlement_config import SettlementConfig, get_settlement_config
from services.settlement_engine import SettlementEngine
from services.transition_events import TransitionEventBus
from services.wallet_projection import DataProfiler, WalletProjection

logger = logging.getLogger(__name__)


@dataclass
class SettlementServices:
    config: SettlementConfig
    store: SettlementStore
    brokerage: BrokerageTransferClient
    events: TransitionEventBus
    transitioner: OrderTransitioner
    ledger: LedgerService
    wallet: WalletProjection
    profiler: DataProfiler
    engine: SettlementEngine
    toggle: SellToggleService
    journal: JournalEngine
    payments: BrokerPaymentService


def build_brokerage(config: SettlementConfig) -> BrokerageTransferClient:
    if config.is_live:
        return BrokerageClient(
            base_url=config.brokerage_base_url,
            api_key=config.brokerage_api_key,
            api_secret=config.brokerage_api_secret,
            firm_account_id=config.brokerage_firm_account_id,
            timeout=float(config.journal_transfer_timeout_seconds),
        )
    return DemoBrokerage()


def build_store() -> SettlementStore:
    if os.getenv("DATABASE_URL") or os.getenv("DB_HOST"):
        from app.database.session import get_engine
        from services.sql_store import SqlSettlementStore, create_schema

        engine = get_engine()
        create_schema(engine)
        return SqlSettlementStore(engine)
    return InMemorySettlementStore()


def build_settlement_services(
    config: Optional[SettlementConfig] = None,
    store: Optional[SettlementStore] = None,
    brokerage: Optional[BrokerageTransferClient] = None,
) -> SettlementServices:
    config = config or get_settlement_config()
    store = store if store is not None else build_store()
    brokerage = brokerage if brokerage is not None else build_brokerage(config)

    events = TransitionEventBus()
    transitioner = OrderTransitioner(store, event_bus=events)
    ledger = LedgerService(store)
    engine = SettlementEngine(transitioner, config)

    services = SettlementServices(
        config=config,
        store=store,
        brokerage=brokerage,
        events=events,
        transitioner=transitioner,
        ledger=ledger,
        wallet=WalletProjection(store, ledger),
        profiler=DataProfiler(store, epsilon=config.reconciliation_epsilon),
        engine=engine,
        toggle=SellToggleService(transitioner),
        journal=JournalEngine(transitioner, brokerage, config),
        payments=BrokerPaymentService(store, engine),
    )
    logger.info(
        f"[SETTLEMENT] Services built | store={type(store).__name__} | "
        f"brokerage={type(brokerage).__name__} | mode={config.brokerage_mode}"
    )
    return services


# =============================================================================
# Singleton
# =============================================================================

_services: Optional[SettlementServices] = None
_services_lock = threading.Lock()


def get_settlement_services() -> SettlementServices:
    """Process-wide services (FastAPI dependency; overridable in tests)."""
    global _services
    with _services_lock:
        if _services is None:
            _services = build_settlement_services()
        return _services


def reset_settlement_services() -> None:
    global _services
    with _services_lock:
        _services = None


__all__ = [
    "SettlementServices",
    "build_settlement_services",
    "build_brokerage",
    "build_store",
    "get_settlement_services",
    "reset_settlement_services",
]
