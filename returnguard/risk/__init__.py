# returnguard/risk/__init__.py
# =============================
# Customer Risk Engine — ReturnGuard
#
# Responsibility:
#   - Compute a customer risk score (0–100) from return volume, high-value
#     share, behavioral flags and an optional ML confidence
#   - Keep the cached score and status on the Customer current
#
# Public API:
#   - build_signal_bundle() — summarize a customer's history
#   - compute_score()       — deterministic, side-effect-free scoring
#   - RiskScoreAggregator   — score + write back + audit on change

from returnguard.risk.signals import (  # noqa: F401
    CustomerSignalBundle,
    HIGH_VALUE_AMOUNT,
    RETURN_WINDOW_DAYS,
    build_signal_bundle,
)
from returnguard.risk.scorer import (  # noqa: F401
    RiskScoreAggregator,
    compute_score,
    score_bundle,
)
