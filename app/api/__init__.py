# ============================================================================
# Loyalty Settlement Core v1.0.0
# API Routes Module
# ============================================================================

from app.api.settlement import router as settlement_router

__all__ = ["settlement_router"]
