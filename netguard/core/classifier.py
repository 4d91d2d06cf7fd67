"""Threat classifiers consumed by the risk engine.

A classifier maps a device and its recent history to a ThreatAssessment.
Classifiers may raise or hang; the risk engine bounds every call with a
timeout and substitutes a conservative fallback.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import httpx

from netguard.core.models import (
    Device,
    DeviceHistoryEvent,
    RiskLevel,
    ThreatAssessment,
    risk_level_for,
)

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a cybersecurity expert specializing in network threat analysis. "
    "Provide concise, actionable security assessments."
)

_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "threatLevel": {"type": "string", "enum": [lvl.value for lvl in RiskLevel]},
        "riskScore": {"type": "integer", "minimum": 0, "maximum": 100},
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "summary": {"type": "string"},
        "shouldBlock": {"type": "boolean"},
    },
    "required": ["threatLevel", "riskScore", "recommendations", "summary", "shouldBlock"],
    "additionalProperties": False,
}


class ThreatClassifier(Protocol):
    async def assess(
        self, device: Device, history: list[DeviceHistoryEvent]
    ) -> ThreatAssessment: ...


# ---------------------------------------------------------------------------
# Heuristic classifier
# ---------------------------------------------------------------------------

_RECOMMENDATIONS: dict[RiskLevel, list[str]] = {
    RiskLevel.LOW: ["No action required", "Keep device firmware up to date"],
    RiskLevel.MEDIUM: [
        "Monitor this device closely",
        "Confirm the device owner",
        "Keep device firmware up to date",
    ],
    RiskLevel.HIGH: [
        "Identify the device owner",
        "Move the device to a guest network",
        "Review access logs",
    ],
    RiskLevel.CRITICAL: [
        "Block the device until it is identified",
        "Review access logs",
        "Update firewall rules",
    ],
}


class HeuristicThreatClassifier:
    """Deterministic classifier used when no model endpoint is configured.

    Mirrors the stored risk score: the threat level is the score's level and
    blocking is only recommended for critical devices.
    """

    async def assess(
        self, device: Device, history: list[DeviceHistoryEvent]
    ) -> ThreatAssessment:
        level = risk_level_for(device.risk_score)
        return ThreatAssessment(
            threat_level=level,
            risk_score=device.risk_score,
            recommendations=list(_RECOMMENDATIONS[level]),
            summary=(
                f"{device.display_name} has risk score {device.risk_score}/100 "
                f"({level.value}) with {len(history)} recent events."
            ),
            should_block=level is RiskLevel.CRITICAL,
        )


# ---------------------------------------------------------------------------
# Chat-completion classifier
# ---------------------------------------------------------------------------

def build_prompt(device: Device, history: list[DeviceHistoryEvent]) -> str:
    """User prompt describing the device and its ten most recent events."""
    activity = "\n".join(
        f"{event.event_type.value}: {event.details or ''}" for event in history[:10]
    )
    return (
        "Analyze the following device and provide a threat assessment.\n\n"
        "Device Information:\n"
        f"- IP Address: {device.ip or 'Unknown'}\n"
        f"- MAC Address: {device.mac}\n"
        f"- Vendor: {device.vendor or 'Unknown'}\n"
        f"- Device Type: {device.device_type or 'Unknown'}\n"
        f"- Current Risk Score: {device.risk_score}\n"
        f"- Online Status: {'Online' if device.is_online else 'Offline'}\n"
        f"- First Seen: {device.first_seen.isoformat()}\n"
        f"- Last Seen: {device.last_seen.isoformat()}\n\n"
        "Recent Activity:\n"
        f"{activity or 'No recent activity'}\n\n"
        "Respond with JSON using the keys threatLevel, riskScore, "
        "recommendations (array), summary and shouldBlock (boolean)."
    )


def parse_assessment(content: Any) -> ThreatAssessment:
    """Decode a model reply into a ThreatAssessment.

    ``content`` is either a JSON string or a list of content parts, as
    returned by OpenAI-compatible chat endpoints. Raises ValueError when the
    reply does not contain a usable assessment.
    """
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Empty classifier response")
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Classifier response is not an object")
    return ThreatAssessment(
        threat_level=RiskLevel(data["threatLevel"]),
        risk_score=max(0, min(100, int(data["riskScore"]))),
        recommendations=[str(r) for r in data.get("recommendations", [])],
        summary=str(data.get("summary", "")),
        should_block=bool(data.get("shouldBlock", False)),
    )


class HttpThreatClassifier:
    """Classifier backed by an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        model: str = "gpt-4o-mini",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self.model = model
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)

    async def assess(
        self, device: Device, history: list[DeviceHistoryEvent]
    ) -> ThreatAssessment:
        body = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": build_prompt(device, history)},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "threat_analysis", "strict": True, "schema": _RESPONSE_SCHEMA},
            },
        }
        resp = await self._client.post(self.url, json=body)
        resp.raise_for_status()
        choices = resp.json().get("choices") or []
        if not choices:
            raise ValueError("Classifier returned no choices")
        return parse_assessment(choices[0].get("message", {}).get("content"))

    async def close(self) -> None:
        await self._client.aclose()
