"""
Automation — decides whether an inbound event gets an automated reply
and guarantees at most one reply per event.
"""
from automation.claims import ReplyClaimStore, event_key_for
from automation.collaborators import (
    Classifier, ReplyGenerator, ReplyContext, TemplateReplyGenerator,
)
from automation.engine import AutomationDecisionEngine
from automation.intent import infer_intent_from_text, is_opt_out

__all__ = [
    "ReplyClaimStore", "event_key_for",
    "Classifier", "ReplyGenerator", "ReplyContext", "TemplateReplyGenerator",
    "AutomationDecisionEngine",
    "infer_intent_from_text", "is_opt_out",
]
