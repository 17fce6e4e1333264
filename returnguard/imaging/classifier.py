"""
returnguard/imaging/classifier.py
==================================
External Image Classifier Adapters — ReturnGuard

Responsibility:
    - Define the one-operation classifier capability: classify(image) → output
    - Provide concrete backends: OpenAI vision model, hosted HTTP model,
      and a static backend for offline runs
    - Validate every backend's raw output into a ClassifierOutput
    - Surface EVERY failure (network, timeout, quota, malformed output) as
      AnalysisUnavailable — never as a half-built verdict

Classifier calls are slow external I/O. The engine runs them before it
takes any entity lock; only the returned ClassifierOutput enters the
locked fusion/decision step.

This module does NOT:
    - Apply damage / authenticity / category rules (that is fuser.py)
    - Touch returns, customers or the audit log
"""

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
from openai import OpenAI

from returnguard.config import Settings
from returnguard.errors import AnalysisUnavailable
from returnguard.openai_retry import chat_completions_with_retry

logger = logging.getLogger("returnguard.imaging.classifier")


# ---------------------------------------------------------------------------
# Output contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClassifierOutput:
    """Raw classifier result: top label, confidence, pixel-level heuristics."""

    label: str
    confidence: float
    authenticity: float = 1.0
    heuristics: dict[str, Any] = field(default_factory=dict)


class ImageClassifier(Protocol):
    def classify(self, image_bytes: bytes) -> ClassifierOutput: ...


def _unit_float(payload: dict[str, Any], key: str, default: float | None = None) -> float:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number, got {type(value).__name__}")
    value = float(value)
    if value < 0.0 or value > 1.0:
        raise ValueError(f"{key} must be between 0.0 and 1.0, got {value}")
    return value


def parse_classifier_payload(payload: Any) -> ClassifierOutput:
    """
    Validate a backend payload into a ClassifierOutput.

    Accepts either a single object ``{"label", "confidence", ...}`` or a
    ranked list of ``{"label", "score"}`` candidates (image-classification
    pipeline format), in which case the highest score wins.

    Raises:
        ValueError: If the payload is malformed.
    """
    if isinstance(payload, list):
        candidates = [item for item in payload if isinstance(item, dict)]
        if not candidates:
            raise ValueError("Classifier returned an empty candidate list")
        top = max(candidates, key=lambda item: item.get("score", 0.0))
        payload = {"label": top.get("label"), "confidence": top.get("score")}

    if not isinstance(payload, dict):
        raise ValueError(f"Expected JSON object, got {type(payload).__name__}")

    label = payload.get("label")
    if not isinstance(label, str) or not label.strip():
        raise ValueError(f"Invalid label: {label!r}")

    heuristics = payload.get("heuristics") or {}
    if not isinstance(heuristics, dict):
        raise ValueError("heuristics must be an object")

    authenticity = payload.get("authenticity", heuristics.get("authenticity", 1.0))

    return ClassifierOutput(
        label=label.strip(),
        confidence=round(_unit_float(payload, "confidence"), 4),
        authenticity=round(_unit_float({"authenticity": authenticity}, "authenticity"), 4),
        heuristics=dict(heuristics),
    )


def _guess_media_type(image_bytes: bytes) -> str:
    if image_bytes.startswith(b"\x89PNG"):
        return "image/png"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    if image_bytes.startswith(b"GIF8"):
        return "image/gif"
    return "image/jpeg"


# ---------------------------------------------------------------------------
# OpenAI vision backend
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT: str = (
    "You are an image classifier for returned fashion items. "
    "Look at the photo of the returned item and report what it is.\n\n"
    "RULES:\n"
    "- You MUST return ONLY a valid JSON object with exactly these keys: "
    '"label", "confidence", "authenticity", "heuristics".\n'
    '- "label" is a short lowercase description of the item, including its '
    'condition if visibly damaged (e.g. "torn denim jacket", "leather bag").\n'
    '- "confidence" is a float between 0.0 and 1.0 for the label.\n'
    '- "authenticity" is a float between 0.0 and 1.0 estimating that the item '
    "is a genuine product rather than a counterfeit or a substituted item.\n"
    '- "heuristics" is an object of numeric pixel-level observations '
    '(e.g. {"blur": 0.1, "stain_area": 0.0}).\n'
    "- Do NOT include any other keys or text.\n"
)


class OpenAIImageClassifier:
    """Classifies item photos with an OpenAI vision-capable chat model."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        api_key: str | None = None,
        timeout: float = 20.0,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.timeout = timeout

    def classify(self, image_bytes: bytes) -> ClassifierOutput:
        if not image_bytes:
            raise AnalysisUnavailable("Empty image payload")

        encoded = base64.b64encode(image_bytes).decode("ascii")
        data_url = f"data:{_guess_media_type(image_bytes)};base64,{encoded}"

        try:
            client = OpenAI(api_key=self.api_key, timeout=self.timeout)
            response = chat_completions_with_retry(
                client,
                model=self.model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Classify this returned item."},
                            {"type": "image_url", "image_url": {"url": data_url}},
                        ],
                    },
                ],
                temperature=0.0,
                max_tokens=120,
                response_format={"type": "json_object"},
            )
        except Exception as exc:
            logger.warning("OpenAI image classification failed: %s", exc)
            raise AnalysisUnavailable(f"OpenAI classifier failed: {exc}") from exc

        raw_content = response.choices[0].message.content or ""
        logger.debug("OpenAI raw classifier response: %s", raw_content)

        try:
            output = parse_classifier_payload(json.loads(raw_content.strip()))
        except (json.JSONDecodeError, ValueError) as exc:
            raise AnalysisUnavailable(f"Malformed classifier output: {exc}") from exc

        logger.info(
            "Image classified: label=%s, confidence=%.2f, authenticity=%.2f",
            output.label, output.confidence, output.authenticity,
        )
        return output


# ---------------------------------------------------------------------------
# Hosted HTTP backend
# ---------------------------------------------------------------------------


class HttpImageClassifier:
    """Posts the image to a hosted classification endpoint."""

    def __init__(self, url: str, timeout: float = 20.0, api_key: str | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.api_key = api_key

    def classify(self, image_bytes: bytes) -> ClassifierOutput:
        if not image_bytes:
            raise AnalysisUnavailable("Empty image payload")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        files = {"image": ("item", image_bytes, _guess_media_type(image_bytes))}

        try:
            resp = requests.post(self.url, headers=headers, files=files, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.Timeout as exc:
            raise AnalysisUnavailable(f"Classifier timed out after {self.timeout}s") from exc
        except (requests.RequestException, ValueError) as exc:
            raise AnalysisUnavailable(f"Classifier request failed: {exc}") from exc

        try:
            return parse_classifier_payload(body)
        except ValueError as exc:
            raise AnalysisUnavailable(f"Malformed classifier output: {exc}") from exc


# ---------------------------------------------------------------------------
# Static backend
# ---------------------------------------------------------------------------


class StaticImageClassifier:
    """Returns the same output for every image. Useful offline and in demos."""

    def __init__(self, output: ClassifierOutput) -> None:
        self.output = output

    def classify(self, image_bytes: bytes) -> ClassifierOutput:
        return self.output


def build_classifier(settings: Settings) -> ImageClassifier | None:
    """Instantiate the backend selected by ``RETURNGUARD_CLASSIFIER``."""
    if settings.classifier == "openai":
        return OpenAIImageClassifier(
            model=settings.openai_model,
            api_key=settings.openai_api_key,
            timeout=settings.classifier_timeout,
        )
    if settings.classifier == "http":
        if not settings.classifier_url:
            raise ValueError("RETURNGUARD_CLASSIFIER_URL is required for the http classifier")
        return HttpImageClassifier(settings.classifier_url, timeout=settings.classifier_timeout)
    return None
