"""
Collaborator interfaces for the decision engine.

Classification and reply generation live outside this service (AI
pipelines). The engine depends only on these interfaces; the template
generator is the built-in fallback used when no AI generator is wired.
"""
from __future__ import annotations

import abc
import structlog
from typing import Optional

from pydantic import BaseModel

from models.schemas import Channel, Classification, ProductReference, ReplyKind

logger = structlog.get_logger()


class ReplyContext(BaseModel):
    """Everything a generator may use to write one reply."""
    tenant_id: str
    channel: Channel
    intent: str
    reply_kind: ReplyKind = ReplyKind.ANSWER
    inbound_text: str = ""
    brand_tone: str = "friendly"
    shop_domain: str = ""
    product: Optional[ProductReference] = None
    is_followup: bool = False


class Classifier(abc.ABC):

    @abc.abstractmethod
    async def classify(self, text: str) -> Classification:
        ...


class ReplyGenerator(abc.ABC):

    @abc.abstractmethod
    async def generate(self, context: ReplyContext) -> str:
        ...


CLARIFYING_MESSAGES = {
    "friendly": "Hi! Thanks for reaching out! Which product are you interested in?",
    "expert": "Hello! Could you please specify which product you're referring to?",
    "casual": "Hey! Which product are you talking about?",
}

ANSWER_TEMPLATES = {
    "friendly": "Hi! Thanks for your interest! Check it out here: {url}\n\nLet me know if you have any questions!",
    "expert": "Hello! Thank you for your inquiry. You can view it here: {url}\n\nI'm here to answer any questions you may have.",
    "casual": "Hey! Here's the link: {url}\n\nHit me up if you need anything!",
}

STORE_ANSWER = "Thanks for your message! Our team will follow up with the details shortly."


class TemplateReplyGenerator(ReplyGenerator):
    """
    Tone-based templates. Answers are delegated to `answer_generator`
    when one is configured; clarifying questions always use templates.
    """

    def __init__(self, answer_generator: Optional[ReplyGenerator] = None):
        self.answer_generator = answer_generator

    async def generate(self, context: ReplyContext) -> str:
        tone = context.brand_tone if context.brand_tone in CLARIFYING_MESSAGES else "friendly"

        if context.reply_kind == ReplyKind.CLARIFYING:
            return CLARIFYING_MESSAGES[tone]

        if self.answer_generator is not None:
            return await self.answer_generator.generate(context)

        url = context.product.url if context.product else None
        if not url:
            return STORE_ANSWER
        return ANSWER_TEMPLATES[tone].format(url=url)
