"""Risk scoring, anomaly detection and classifier-backed threat assessment."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from netguard.core.classifier import HeuristicThreatClassifier, ThreatClassifier
from netguard.core.fingerprint import categorize
from netguard.core.models import (
    AnomalyResult,
    Device,
    DeviceCategory,
    DeviceHistoryEvent,
    HistoryEventType,
    RawDevice,
    RiskLevel,
    Severity,
    ThreatAssessment,
    risk_level_for,
)

logger = logging.getLogger(__name__)

NEW_DEVICE_WEIGHT = 20
UNKNOWN_VENDOR_WEIGHT = 15
UNKNOWN_TYPE_WEIGHT = 10
IOT_WEIGHT = 5

CHURN_THRESHOLD = 20

_UNRESOLVED_VENDORS = frozenset({"", "unknown", "unknown vendor"})
_UNRESOLVED_TYPES = frozenset({"", "unknown", "unknown device"})
_GENERIC_TYPES = frozenset({"network device"})
# Matched by category so labels like "Samsung TV" or "HP Printer" count
IOT_WATCHLIST = frozenset({DeviceCategory.TV, DeviceCategory.PRINTER, DeviceCategory.IOT})

FALLBACK_RECOMMENDATIONS = (
    "Monitor this device closely",
    "Review access logs",
    "Update firewall rules",
)
FALLBACK_SUMMARY = "Unable to complete full analysis. Device requires manual review."


def vendor_unresolved(vendor: str | None) -> bool:
    return (vendor or "").strip().lower() in _UNRESOLVED_VENDORS


def type_unresolved(device_type: str | None) -> bool:
    return (device_type or "").strip().lower() in _UNRESOLVED_TYPES


def fallback_assessment(device: Device) -> ThreatAssessment:
    """Conservative assessment shown when the classifier fails or times out."""
    return ThreatAssessment(
        threat_level=RiskLevel.MEDIUM,
        risk_score=device.risk_score,
        recommendations=list(FALLBACK_RECOMMENDATIONS),
        summary=FALLBACK_SUMMARY,
        should_block=False,
        is_fallback=True,
    )


class RiskEngine:
    """Scores devices and wraps the threat classifier with a timeout."""

    def __init__(
        self,
        classifier: ThreatClassifier | None = None,
        classifier_timeout: float = 15.0,
    ) -> None:
        self.classifier: ThreatClassifier = classifier or HeuristicThreatClassifier()
        self.classifier_timeout = classifier_timeout

    def score(
        self,
        device: Device | RawDevice,
        history: Sequence[DeviceHistoryEvent] = (),
        is_newly_observed: bool = False,
    ) -> int:
        """Weighted 0-100 score from device attributes.

        ``history`` is accepted so callers can pass what they have; none of
        the current factors depend on it.
        """
        score = 0
        if is_newly_observed:
            score += NEW_DEVICE_WEIGHT
        if vendor_unresolved(device.vendor):
            score += UNKNOWN_VENDOR_WEIGHT
        device_type = (device.device_type or "").strip().lower()
        if type_unresolved(device_type) or device_type in _GENERIC_TYPES:
            score += UNKNOWN_TYPE_WEIGHT
        if device_type and categorize(device_type) in IOT_WATCHLIST:
            score += IOT_WEIGHT
        return max(0, min(100, score))

    @staticmethod
    def level(score: int) -> RiskLevel:
        return risk_level_for(score)

    def detect_anomaly(
        self, device: Device, history: Sequence[DeviceHistoryEvent]
    ) -> AnomalyResult:
        """First matching rule wins; no signal means no anomaly."""
        connects = sum(1 for e in history if e.event_type == HistoryEventType.CONNECTED)
        disconnects = sum(1 for e in history if e.event_type == HistoryEventType.DISCONNECTED)

        if connects > CHURN_THRESHOLD and disconnects > CHURN_THRESHOLD:
            return AnomalyResult(
                is_anomaly=True,
                reason="Device showing unusual connection patterns",
                severity=Severity.MEDIUM,
            )
        if device.risk_score > 80:
            return AnomalyResult(
                is_anomaly=True,
                reason="Device has critical risk score",
                severity=Severity.HIGH,
            )
        if type_unresolved(device.device_type) and device.risk_score > 50:
            return AnomalyResult(
                is_anomaly=True,
                reason="Unknown device with elevated risk",
                severity=Severity.MEDIUM,
            )
        return AnomalyResult()

    async def assess(
        self, device: Device, history: Sequence[DeviceHistoryEvent]
    ) -> ThreatAssessment:
        """Classifier verdict, or the static fallback on any failure."""
        try:
            return await asyncio.wait_for(
                self.classifier.assess(device, list(history)),
                timeout=self.classifier_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Threat classifier timed out after %.0fs for %s", self.classifier_timeout, device.mac
            )
        except Exception as exc:
            logger.warning("Threat classifier failed for %s: %s", device.mac, exc)
        return fallback_assessment(device)

    @staticmethod
    def should_auto_block(assessment: ThreatAssessment) -> bool:
        """Only a real classifier verdict can trigger a block."""
        return assessment.should_block and not assessment.is_fallback
