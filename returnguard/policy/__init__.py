# returnguard/policy/__init__.py
# ===============================
# Policy Layer — ReturnGuard
#
# Responsibility:
#   - Hold the single active, versioned Policy (thresholds + toggles)
#   - Reject edits that break the threshold ordering or ranges
#   - Classify scores into risk bands for every decision component
#
# Public API:
#   - PolicyStore            — get_active() / propose() / reset()
#   - classify_band()        — score → low | medium | high | auto_block
#   - derive_customer_status() — score → normal | warned | under_review | blocked

from returnguard.policy.store import (  # noqa: F401
    Policy,
    PolicyStore,
    WIRE_NAMES,
    validate_policy,
)
from returnguard.policy.bands import classify_band, derive_customer_status  # noqa: F401
