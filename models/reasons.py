"""
Rejection reasons returned by the decision engine.

Values are stable, human-readable strings; callers log and display them.
"""
from enum import Enum


class Reason(str, Enum):
    ALREADY_REPLIED = "Already replied to this message"
    ALREADY_REPLIED_COMMENT = "Already replied to this comment"
    TENANT_INACTIVE = "Tenant not found or inactive"
    COMMENTS_NOT_ON_PLAN = "Feature not available on FREE plan"
    DM_AUTOMATION_DISABLED = "DM automation disabled"
    COMMENT_AUTOMATION_DISABLED = "Comment automation disabled"
    OPTED_OUT = "User opted out of automated messages"
    USAGE_CAP_EXCEEDED = "Usage cap exceeded"
    FOLLOWUP_NOT_ON_PLAN = "Follow-up DMs not available on FREE plan"
    INTENT_NOT_ELIGIBLE = "Intent not eligible for automation"
    LOW_CONFIDENCE = "Confidence below threshold"
    COMMENT_TOO_OLD = "Comment older than 7 days"
    MISSING_RECIPIENT = "Missing recipient"
    MISSING_PRODUCT_CONTEXT = "No product context available"
    CLARIFYING_LIMIT_REACHED = "Clarifying question limit reached"
    GENERATION_FAILED = "Reply generation failed"
    DELIVERY_FAILED = "Delivery failed"
    INTERNAL_ERROR = "Internal error"
