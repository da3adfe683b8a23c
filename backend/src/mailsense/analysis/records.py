"""
Mapping analysis results onto storage.

Pulls the commonly queried scalar fields out of a result payload and
derives the message's signal codes.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from mailsense.domain_models.analysis import AnalysisKind, AnalysisResult, Signal

K = AnalysisKind

_SENTIMENT_SIGNALS = {
    "positive": Signal.SENTIMENT_POSITIVE,
    "negative": Signal.SENTIMENT_NEGATIVE,
    "neutral": Signal.SENTIMENT_NEUTRAL,
}

_CHURN_SIGNALS = {
    "low": Signal.CHURN_LOW,
    "medium": Signal.CHURN_MEDIUM,
    "high": Signal.CHURN_HIGH,
    "critical": Signal.CHURN_CRITICAL,
}

_DETECTED_SIGNALS = {
    K.ESCALATION.value: Signal.ESCALATION,
    K.UPSELL.value: Signal.UPSELL,
    K.KUDOS.value: Signal.KUDOS,
    K.COMPETITOR.value: Signal.COMPETITOR,
}


def extract_analysis_fields(kind: str, payload: Mapping[str, Any]) -> dict[str, Any]:
    """Scalar columns for the persisted record: confidence, detected, risk_level, urgency, sentiment_value."""
    fields: dict[str, Any] = {
        "confidence": payload.get("confidence"),
        "detected": None,
        "risk_level": None,
        "urgency": None,
        "sentiment_value": None,
    }
    if kind == K.SENTIMENT.value:
        fields["sentiment_value"] = payload.get("value")
    elif kind == K.ESCALATION.value:
        fields["detected"] = payload.get("detected")
        fields["urgency"] = payload.get("urgency")
    elif kind == K.CHURN.value:
        fields["risk_level"] = payload.get("riskLevel")
    elif kind in (K.UPSELL.value, K.KUDOS.value, K.COMPETITOR.value):
        fields["detected"] = payload.get("detected")
    return fields


def compute_signals(results: Mapping[str, AnalysisResult]) -> list[int]:
    signals: set[int] = set()
    for kind, result in results.items():
        payload = result.result
        if not payload:
            continue
        if kind == K.SENTIMENT.value:
            signal = _SENTIMENT_SIGNALS.get(payload.get("value"))
            if signal is not None:
                signals.add(signal.value)
        elif kind == K.CHURN.value:
            signal = _CHURN_SIGNALS.get(payload.get("riskLevel"))
            if signal is not None:
                signals.add(signal.value)
        elif kind in _DETECTED_SIGNALS and payload.get("detected"):
            signals.add(_DETECTED_SIGNALS[kind].value)
    return sorted(signals)
