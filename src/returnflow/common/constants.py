"""Centralized constants for ReturnFlow system configuration."""


# ===== CONTROL SERVER GATE =====
class ControlServerConstants:
    RATE_LIMIT_WINDOW_SECONDS = 60
    RATE_LIMIT_MAX_REQUESTS = 100
    CIRCUIT_BREAKER_THRESHOLD = 5
    CIRCUIT_BREAKER_RESET_SECONDS = 60

    REQUIRED_ENVELOPE_FIELDS = ("id", "agentId", "businessId", "action")

    ERROR_SECURITY_FLAG = "error_response"
    RATE_LIMITED_FLAG = "rate_limited"
    CIRCUIT_OPEN_FLAG = "circuit_open"


# ===== POLICY =====
class PolicyConstants:
    CACHE_TTL_SECONDS = 300
    DEFAULT_MAX_CALL_DURATION = 1800
    DEFAULT_AUTO_ESCALATION_THRESHOLD = 500

    SIMPLE_CALL_REASONS = ("general issue", "wrong item")
    COMPLEX_CALL_REASONS = ("defective", "damaged")

    ANALYTICS_WINDOW_DAYS = 30
    TOP_REASONS_LIMIT = 5
    COMPLIANT_SCORE = 0.8
    METRICS_SAMPLE_SIZE = 500


# ===== DECISION ENGINE =====
class DecisionConstants:
    HUMAN_REVIEW_CONFIDENCE = 0.7
    DEFAULT_CONFIDENCE = 0.5
    DEFAULT_CUSTOMER_RISK = 0.5
    STAGE_TIMEOUT_SECONDS = 20.0
    STAGE_TIMEOUT_MIN_SECONDS = 10.0
    STAGE_TIMEOUT_MAX_SECONDS = 30.0
    ENGINE_AGENT_ID = "layered-engine"


# ===== STORAGE =====
class Tables:
    RETURN_REQUESTS = "return_requests"
    POLICIES = "policies"
    CALL_SESSIONS = "call_sessions"
    CALL_EVENTS = "call_events"
    CONVERSATION_SESSIONS = "conversation_sessions"
    CONVERSATION_MESSAGES = "conversation_messages"
    AUDIT_LOGS = "audit_logs"


# ===== CUSTOMER RISK =====
class RiskConstants:
    BASE_SCORE = 0.5
    HIGH_FREQUENCY_RETURNS = 5
    MODERATE_FREQUENCY_RETURNS = 2
    HIGH_VALUE_ORDER = 500
    RECENT_WINDOW_DAYS = 30
    RECENT_RETURNS_LIMIT = 2
    SUSPICIOUS_REASONS = ("wrong item", "not as described", "defective")


# ===== SYSTEM LOAD =====
class LoadConstants:
    POLICY_COMPLIANCE_WEIGHT = 10
    POLICY_METRICS_WEIGHT = 5
    REQUEST_METRICS_WEIGHT = 8
    HIGH_LOAD = 80
    LOW_COMPLIANCE = 70


# ===== CONVERSATION =====
class ConversationConstants:
    DEFAULT_HISTORY_LIMIT = 50
    AI_AGENT_TYPES = ("triage", "customer_service", "escalation")


# ===== AUDIT =====
class AuditConstants:
    HASH_ALGORITHM = "sha256"
