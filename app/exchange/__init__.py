# ============================================================================
# Loyalty Settlement Core v1.0.0
# Exchange Integration Module - Brokerage Connectivity
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Money conversion and brokerage journal API integration
#
# Components:
#   - DecimalGateway: Ensures all financial data uses decimal.Decimal
#   - ExponentialBackoff: Retry spacing for brokerage calls
#   - BrokerageClient: Cash journal API client (firm -> member sub-account)
#
# ============================================================================

from app.exchange.decimal_gateway import DecimalGateway
from app.exchange.rate_limiter import ExponentialBackoff
from app.exchange.brokerage_client import (
    BrokerageClient,
    BrokerageTransferClient,
    BrokerageClientError,
    BrokerageTimeoutError,
    JournalReceipt,
)

__all__ = [
    "DecimalGateway",
    "ExponentialBackoff",
    "BrokerageClient",
    "BrokerageTransferClient",
    "BrokerageClientError",
    "BrokerageTimeoutError",
    "JournalReceipt",
]
