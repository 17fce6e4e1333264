# returnguard/__init__.py
# ========================
# ReturnGuard — fraud-risk decision engine for e-commerce returns
#
# Components (leaf-first):
#   - policy   — versioned thresholds + toggles, risk bands
#   - risk     — customer risk score aggregation
#   - imaging  — external classifier adapters + verdict fusion
#   - returns  — return decision state machine
#   - chat     — intent detection + chat risk routing
#   - audit    — append-only decision trail
#
# Entry point for callers: returnguard.engine.ReturnGuardEngine

__version__ = "1.0.0"
