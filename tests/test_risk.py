"""Tests for risk scoring, anomaly rules and the classifier wrapper."""

import asyncio
import json

import httpx
import pytest

from netguard.core.classifier import (
    HeuristicThreatClassifier,
    HttpThreatClassifier,
    build_prompt,
    parse_assessment,
)
from netguard.core.fingerprint import identify
from netguard.core.models import (
    DeviceHistoryEvent,
    HistoryEventType,
    RiskLevel,
    Severity,
    ThreatAssessment,
)
from netguard.core.risk import (
    CHURN_THRESHOLD,
    FALLBACK_SUMMARY,
    RiskEngine,
    fallback_assessment,
)

from conftest import make_device, make_raw


def history(device_id, *kinds, count=1):
    return [
        DeviceHistoryEvent(device_id=device_id, account_id=1, event_type=kind)
        for kind in kinds
        for _ in range(count)
    ]


class SlowClassifier:
    async def assess(self, device, history):
        await asyncio.sleep(5)
        return ThreatAssessment()


class BrokenClassifier:
    async def assess(self, device, history):
        raise RuntimeError("model unavailable")


# =============================================================================
# SCORING
# =============================================================================

class TestScore:
    @pytest.fixture
    def engine(self):
        return RiskEngine()

    def test_known_device_scores_zero(self, engine):
        device = make_device(vendor="Apple", device_type="MacBook")
        assert engine.score(device) == 0

    def test_new_unknown_vendor_known_type(self, engine):
        raw = make_raw(vendor=None, device_type="Laptop")
        assert engine.score(raw, is_newly_observed=True) == 35

    def test_all_factors(self, engine):
        device = make_device(vendor="Unknown Vendor", device_type="Smart TV")
        # Smart TV is on the IoT watch-list but is a resolved type
        assert engine.score(device, is_newly_observed=True) == 20 + 15 + 5

    @pytest.mark.parametrize("device_type", [None, "", "Unknown", "Unknown Device", "Network Device"])
    def test_unresolved_or_generic_type(self, engine, device_type):
        device = make_device(vendor="Dell", device_type=device_type)
        assert engine.score(device) == 10

    def test_case_insensitive(self, engine):
        device = make_device(vendor="UNKNOWN", device_type="ip camera")
        assert engine.score(device) == 15 + 5

    def test_more_unresolved_never_scores_lower(self, engine):
        resolved = make_device(vendor="Dell", device_type="Dell Laptop")
        unresolved_vendor = make_device(vendor=None, device_type="Dell Laptop")
        unresolved_both = make_device(vendor=None, device_type=None)
        assert engine.score(resolved) <= engine.score(unresolved_vendor) <= engine.score(unresolved_both)

    def test_newly_observed_never_scores_lower(self, engine):
        device = make_device(vendor=None, device_type="Printer")
        assert engine.score(device, is_newly_observed=True) > engine.score(device)

    @pytest.mark.parametrize("mac", ["CC:07:AB:00:00:01", "3C:D9:2B:00:00:01"])
    def test_fingerprinted_iot_labels_hit_watch_list(self, engine, mac):
        fp = identify(mac)
        raw = make_raw(mac=mac, vendor=fp.vendor, device_type=fp.device_type)
        assert engine.score(raw, is_newly_observed=True) == 20 + 5

    def test_computer_not_on_watch_list(self, engine):
        raw = make_raw(vendor="Apple", device_type=identify("F0:18:98:00:00:01").device_type)
        assert engine.score(raw) == 0


class TestLevel:
    @pytest.mark.parametrize("score, level", [
        (0, RiskLevel.LOW),
        (39, RiskLevel.LOW),
        (40, RiskLevel.MEDIUM),
        (59, RiskLevel.MEDIUM),
        (60, RiskLevel.HIGH),
        (79, RiskLevel.HIGH),
        (80, RiskLevel.CRITICAL),
        (100, RiskLevel.CRITICAL),
    ])
    def test_boundaries(self, score, level):
        assert RiskEngine.level(score) == level

    def test_device_level_follows_score(self):
        assert make_device(risk_score=35).risk_level == RiskLevel.LOW
        assert make_device(risk_score=45).risk_level == RiskLevel.MEDIUM


# =============================================================================
# ANOMALY DETECTION
# =============================================================================

class TestDetectAnomaly:
    @pytest.fixture
    def engine(self):
        return RiskEngine()

    def test_normal(self, engine):
        result = engine.detect_anomaly(make_device(id=1, device_type="Laptop"), [])
        assert result.is_anomaly is False
        assert result.reason == "Device behavior appears normal"

    def test_connection_churn(self, engine):
        events = history(
            1, HistoryEventType.CONNECTED, HistoryEventType.DISCONNECTED, count=CHURN_THRESHOLD + 1
        )
        result = engine.detect_anomaly(make_device(id=1, device_type="Laptop"), events)
        assert result.is_anomaly is True
        assert result.severity == Severity.MEDIUM
        assert "connection patterns" in result.reason

    def test_churn_needs_both_directions(self, engine):
        events = history(1, HistoryEventType.CONNECTED, count=CHURN_THRESHOLD + 5)
        assert engine.detect_anomaly(make_device(id=1, device_type="Laptop"), events).is_anomaly is False

    def test_churn_threshold_is_strict(self, engine):
        events = history(
            1, HistoryEventType.CONNECTED, HistoryEventType.DISCONNECTED, count=CHURN_THRESHOLD
        )
        assert engine.detect_anomaly(make_device(id=1, device_type="Laptop"), events).is_anomaly is False

    def test_critical_score(self, engine):
        result = engine.detect_anomaly(make_device(id=1, device_type="Laptop", risk_score=81), [])
        assert result.is_anomaly is True
        assert result.severity == Severity.HIGH

    def test_score_of_exactly_80_is_not_flagged(self, engine):
        result = engine.detect_anomaly(make_device(id=1, device_type="Laptop", risk_score=80), [])
        assert result.is_anomaly is False

    def test_unknown_type_with_elevated_score(self, engine):
        result = engine.detect_anomaly(make_device(id=1, device_type=None, risk_score=55), [])
        assert result.is_anomaly is True
        assert result.reason == "Unknown device with elevated risk"

    def test_churn_rule_wins(self, engine):
        events = history(
            1, HistoryEventType.CONNECTED, HistoryEventType.DISCONNECTED, count=CHURN_THRESHOLD + 1
        )
        result = engine.detect_anomaly(make_device(id=1, risk_score=95), events)
        assert result.severity == Severity.MEDIUM


# =============================================================================
# ASSESSMENT
# =============================================================================

class TestAssess:
    @pytest.mark.asyncio
    async def test_classifier_timeout_falls_back(self):
        engine = RiskEngine(SlowClassifier(), classifier_timeout=0.05)
        device = make_device(id=1, risk_score=42)
        result = await engine.assess(device, [])
        assert result.is_fallback is True
        assert result.threat_level == RiskLevel.MEDIUM
        assert result.risk_score == 42
        assert result.should_block is False
        assert result.summary == FALLBACK_SUMMARY

    @pytest.mark.asyncio
    async def test_classifier_error_falls_back(self):
        engine = RiskEngine(BrokenClassifier())
        result = await engine.assess(make_device(id=1), [])
        assert result == fallback_assessment(make_device(id=1))

    @pytest.mark.asyncio
    async def test_heuristic_default(self):
        engine = RiskEngine()
        result = await engine.assess(make_device(id=1, risk_score=85), [])
        assert result.threat_level == RiskLevel.CRITICAL
        assert result.should_block is True
        assert result.is_fallback is False

    @pytest.mark.asyncio
    async def test_heuristic_does_not_block_below_critical(self):
        classifier = HeuristicThreatClassifier()
        result = await classifier.assess(make_device(id=1, risk_score=65), [])
        assert result.threat_level == RiskLevel.HIGH
        assert result.should_block is False

    def test_fallback_never_auto_blocks(self):
        blocked = ThreatAssessment(should_block=True, is_fallback=True)
        assert RiskEngine.should_auto_block(blocked) is False
        assert RiskEngine.should_auto_block(ThreatAssessment(should_block=True)) is True
        assert RiskEngine.should_auto_block(ThreatAssessment(should_block=False)) is False


# =============================================================================
# HTTP CLASSIFIER
# =============================================================================

VERDICT = {
    "threatLevel": "high",
    "riskScore": 72,
    "recommendations": ["Isolate the device"],
    "summary": "Unrecognized camera",
    "shouldBlock": True,
}


class TestParseAssessment:
    def test_string_content(self):
        result = parse_assessment(json.dumps(VERDICT))
        assert result.threat_level == RiskLevel.HIGH
        assert result.risk_score == 72
        assert result.should_block is True

    def test_content_parts(self):
        parts = [{"type": "text", "text": json.dumps(VERDICT)}]
        assert parse_assessment(parts).summary == "Unrecognized camera"

    def test_score_is_clamped(self):
        assert parse_assessment(json.dumps({**VERDICT, "riskScore": 150})).risk_score == 100

    @pytest.mark.parametrize("content", [None, "", "[]", "not json"])
    def test_bad_content(self, content):
        with pytest.raises(ValueError):
            parse_assessment(content)


class TestHttpThreatClassifier:
    @pytest.mark.asyncio
    async def test_posts_prompt_and_decodes_reply(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "choices": [{"message": {"content": json.dumps(VERDICT)}}],
            })

        classifier = HttpThreatClassifier(
            "http://llm.test/v1/chat/completions", api_key="secret",
            transport=httpx.MockTransport(handler),
        )
        device = make_device(id=1, vendor="Acme", device_type="IP Camera", risk_score=40)
        events = history(1, HistoryEventType.CONNECTED)
        try:
            result = await classifier.assess(device, events)
        finally:
            await classifier.close()

        assert result.threat_level == RiskLevel.HIGH
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["response_format"]["type"] == "json_schema"
        assert "AA:BB:CC:DD:EE:01" in seen["body"]["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_http_error_triggers_fallback(self):
        classifier = HttpThreatClassifier(
            "http://llm.test/v1/chat/completions",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        engine = RiskEngine(classifier)
        try:
            result = await engine.assess(make_device(id=1), [])
        finally:
            await classifier.close()
        assert result.is_fallback is True


def test_prompt_lists_recent_activity():
    events = [
        DeviceHistoryEvent(device_id=1, account_id=1, event_type=HistoryEventType.CONNECTED, details=f"event {i}")
        for i in range(15)
    ]
    prompt = build_prompt(make_device(id=1), events)
    assert "event 9" in prompt
    assert "event 10" not in prompt
