# returnguard/imaging/__init__.py
# ================================
# Image Analysis — ReturnGuard
#
# Responsibility:
#   - Call an external image classifier (OpenAI vision, hosted HTTP model,
#     or a static stand-in) and validate its output
#   - Fuse the output with damage / authenticity / category heuristics
#     into an immutable ImageVerdict
#
# Public API:
#   - build_classifier() — backend selected by settings
#   - fuse()             — ClassifierOutput + Policy → ImageVerdict

from returnguard.imaging.classifier import (  # noqa: F401
    ClassifierOutput,
    HttpImageClassifier,
    ImageClassifier,
    OpenAIImageClassifier,
    StaticImageClassifier,
    build_classifier,
    parse_classifier_payload,
)
from returnguard.imaging.fuser import fuse  # noqa: F401
