"""Unit tests for keyword intent, sentiment and return-request detection."""

import pytest

from returnflow.analysis.classifier import (
    analyze_sentiment,
    detect_intent,
    detect_return_request,
    detect_urgency,
    extract_order_id,
    extract_return_reason,
)


class TestIntent:
    """Intent with the largest share of keyword hits wins."""

    @pytest.mark.parametrize("message,intent", [
        ("I'd like a refund please", "return_request"),
        ("Can you track my shipping?", "order_status"),
        ("There is a problem, the lid is broken", "complaint"),
        ("Thanks, bye!", "goodbye"),
    ])
    def test_detects_intent(self, message, intent):
        assert detect_intent(message).intent == intent

    def test_no_keywords_falls_back_to_general_help(self):
        result = detect_intent("hmm")
        assert result.intent == "general_help"
        assert result.confidence == 0.0

    def test_entities(self):
        entities = detect_intent("URGENT: order-991 arrived damaged").entities
        assert entities == {"orderId": "ORDER-991", "reason": "damaged", "urgency": "high"}


class TestEntities:
    def test_order_id(self):
        assert extract_order_id("about ORDER-42 again") == "ORDER-42"
        assert extract_order_id("no id here") is None

    def test_reason_defaults(self):
        assert extract_return_reason("It's the wrong item") == "wrong item"
        assert extract_return_reason("just because") == "general issue"

    def test_urgency(self):
        assert detect_urgency("please reply soon") == "medium"
        assert detect_urgency("whenever") == "low"


class TestSentiment:
    """Score from positive and negative keyword counts."""

    def test_positive(self):
        result = analyze_sentiment("Thank you, this is excellent")
        assert result["sentiment"] == "positive"
        assert result["score"] == 1.0

    def test_negative(self):
        assert analyze_sentiment("I am so frustrated and upset")["sentiment"] == "negative"

    def test_mixed_is_neutral(self):
        result = analyze_sentiment("Good price but awful packaging")
        assert result["sentiment"] == "neutral"
        assert result["score"] == 0.0

    def test_no_matches(self):
        assert analyze_sentiment("The parcel came on Tuesday") == {
            "sentiment": "neutral", "score": 0.0, "matches": 0,
        }


class TestReturnDetection:
    """Return-request detection from free text."""

    def test_no_return_keywords(self):
        assert detect_return_request("What are your opening hours?") is None

    def test_with_order_id_is_confident(self):
        detected = detect_return_request("I want to return ORDER-5, it is defective", "jane@example.com")
        assert detected["orderId"] == "ORDER-5"
        assert detected["reason"] == "defective"
        assert detected["customerEmail"] == "jane@example.com"
        assert detected["confidence"] == 1.0

    def test_without_order_id(self):
        detected = detect_return_request("the handle is broken")
        assert detected["orderId"] == "UNKNOWN"
        assert detected["confidence"] == 0.5
