"""
returnguard/imaging/fuser.py
=============================
Image Verdict Fusion — ReturnGuard

Responsibility:
    - Combine a raw ClassifierOutput with heuristic checks (damage keywords,
      authenticity estimate, fashion-category match) into an ImageVerdict
    - Resolve conflicting rule outcomes by severity: reject > review > approve

Rules, in order (every triggered rule appends its reason; none can lower
the severity set by an earlier rule):
    1. confidence < 0.6           → review  "Low classification confidence"
    2. label has a damage keyword → reject  "Visible damage detected"
    3. authenticity < 0.8         → review  "Authenticity concerns"
    4. label outside fashion set  → review  "Item category mismatch"
    5. nothing fired              → approve "No issues detected"

This module does NOT:
    - Call the classifier (that is classifier.py, outside any lock)
    - Decide the return (that is returns/engine.py)
"""

import logging
from datetime import datetime, timezone

from returnguard.errors import AnalysisUnavailable
from returnguard.imaging.classifier import ClassifierOutput
from returnguard.models import ImageVerdict, Recommendation, strictest
from returnguard.policy.store import Policy

logger = logging.getLogger("returnguard.imaging.fuser")


# ---------------------------------------------------------------------------
# Rule configuration
# ---------------------------------------------------------------------------

MIN_CONFIDENCE: float = 0.6
MIN_AUTHENTICITY: float = 0.8

DAMAGE_KEYWORDS: tuple[str, ...] = (
    "damaged", "torn", "stained", "broken", "worn", "ripped", "hole",
)

FASHION_CATEGORIES: tuple[str, ...] = (
    "shirt", "dress", "pants", "shoe", "bag", "jacket",
    "skirt", "coat", "sweater", "jean", "sandal", "boot", "sneaker",
    "cardigan", "blouse", "scarf", "suit", "jersey",
)

REASON_LOW_CONFIDENCE = "Low classification confidence"
REASON_DAMAGE = "Visible damage detected"
REASON_AUTHENTICITY = "Authenticity concerns"
REASON_CATEGORY = "Item category mismatch"
REASON_CLEAN = "No issues detected"


def _matches_any(label: str, vocabulary: tuple[str, ...]) -> bool:
    lowered = label.lower()
    return any(term in lowered for term in vocabulary)


def fuse(
    output: ClassifierOutput,
    policy: Policy,
    now: datetime | None = None,
) -> ImageVerdict:
    """
    Fuse a classifier output into an immutable ImageVerdict.

    Args:
        output: Raw classifier result.
        policy: Active policy; image analysis must be enabled.
        now:    Verdict timestamp (default: now, UTC).

    Returns:
        ImageVerdict with the strictest triggered recommendation and all
        triggered reasons in rule order.

    Raises:
        AnalysisUnavailable: If ``enableImageAnalysis`` is off.
    """
    if not policy.enable_image_analysis:
        raise AnalysisUnavailable("Image analysis is disabled by policy")

    recommendation = Recommendation.APPROVE
    reasons: list[str] = []
    damage_detected = _matches_any(output.label, DAMAGE_KEYWORDS)

    if output.confidence < MIN_CONFIDENCE:
        recommendation = strictest(recommendation, Recommendation.REVIEW)
        reasons.append(REASON_LOW_CONFIDENCE)

    if damage_detected:
        recommendation = strictest(recommendation, Recommendation.REJECT)
        reasons.append(REASON_DAMAGE)

    if output.authenticity < MIN_AUTHENTICITY:
        recommendation = strictest(recommendation, Recommendation.REVIEW)
        reasons.append(REASON_AUTHENTICITY)

    if not _matches_any(output.label, FASHION_CATEGORIES):
        recommendation = strictest(recommendation, Recommendation.REVIEW)
        reasons.append(REASON_CATEGORY)

    if not reasons:
        reasons.append(REASON_CLEAN)

    verdict = ImageVerdict(
        label=output.label,
        confidence=output.confidence,
        damage_detected=damage_detected,
        authenticity=output.authenticity,
        recommendation=recommendation,
        reasons=tuple(reasons),
        policy_version=policy.version,
        created_at=now or datetime.now(timezone.utc),
    )

    logger.info(
        "Verdict for %r: %s (%s)",
        output.label, recommendation.value, "; ".join(reasons),
    )
    return verdict
