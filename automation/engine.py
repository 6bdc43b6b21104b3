"""
Automation Decision Engine — should this inbound event get an automated reply?

A linear, short-circuiting sequence of checks per event:

  1. duplicate guard          (claim already exists)
  2. channel configuration    (plan gate, per-channel toggle, DM opt-out)
  3. monthly usage cap
  4. follow-up gate           (prior message within 24h needs a conversational plan)
  5. intent resolution        (AI → classifier → keyword fallback; comment confidence/age)
  6. product context          (conversation / media mapping / homepage / clarifying question)
  7. reply generation
  8. claim                    (unique insert; losers stop here)
  9. hand-off                 (fast-path send if admitted, otherwise enqueue)

Every rejection is a normal AutomationResult with a Reason, never an
exception. Usage is incremented only after a confirmed send.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional

from automation.claims import ReplyClaimStore, event_key_for
from automation.collaborators import Classifier, ReplyContext, ReplyGenerator
from automation.intent import infer_intent_from_text, is_opt_out
from channels.base import OutboundSender, is_fatal
from config.settings import AutomationConfig
from database.store_base import DispatchStore
from job_queue.outbound_queue import OutboundQueue
from job_queue.rate_limiter import RateLimiter
from models.plans import PlanConfig, effective_cap, get_plan_config
from models.reasons import Reason
from models.schemas import (
    AutomationResult, Channel, COMMENT_ELIGIBLE_INTENTS, DM_ELIGIBLE_INTENTS,
    InboundEvent, Intent, ProductReference, RecipientType, ReplyKind,
    Tenant, TenantSettings, utcnow,
)

logger = structlog.get_logger()

TEST_COMMENT_PREFIX = "test_comment_"


def product_url(shop_domain: str, handle: Optional[str] = None) -> Optional[str]:
    if not shop_domain:
        return None
    base = shop_domain if shop_domain.startswith("http") else f"https://{shop_domain}"
    base = base.rstrip("/")
    return f"{base}/products/{handle}" if handle else base


class AutomationDecisionEngine:
    """
    Usage:
        engine = AutomationDecisionEngine(store, claims, queue, limiter, sender, generator)
        result = await engine.handle_event(event)
    """

    def __init__(
        self,
        store: DispatchStore,
        claims: ReplyClaimStore,
        queue: OutboundQueue,
        limiter: RateLimiter,
        sender: OutboundSender,
        generator: ReplyGenerator,
        classifier: Optional[Classifier] = None,
        config: Optional[AutomationConfig] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.claims = claims
        self.queue = queue
        self.limiter = limiter
        self.sender = sender
        self.generator = generator
        self.classifier = classifier
        self.config = config or AutomationConfig()
        self._now = now_fn

    async def handle_event(self, event: InboundEvent) -> AutomationResult:
        """Evaluate one inbound event. Never raises."""
        try:
            return await self._evaluate(event)
        except Exception as e:
            logger.error("automation_internal_error",
                         tenant_id=event.tenant_id,
                         event_id=event.id,
                         error=str(e),
                         exc_info=True)
            return AutomationResult(sent=False, reason=Reason.INTERNAL_ERROR.value,
                                    detail=str(e), event_key=event_key_for(event))

    # ── Pipeline ──────────────────────────────────────────

    async def _evaluate(self, event: InboundEvent) -> AutomationResult:
        now = self._now()
        key = event_key_for(event)
        is_comment = event.channel == Channel.COMMENT
        duplicate = Reason.ALREADY_REPLIED_COMMENT if is_comment else Reason.ALREADY_REPLIED

        # 1. Duplicate guard
        if await self.claims.exists(event.tenant_id, key):
            return self._reject(event, key, duplicate)

        tenant = await self.store.get_tenant(event.tenant_id)
        if tenant is None or not tenant.active:
            return self._reject(event, key, Reason.TENANT_INACTIVE)
        plan = get_plan_config(tenant.plan)
        settings = await self.store.get_settings(event.tenant_id)

        # 2. Channel configuration
        reason = self._check_channel(event, plan, settings)
        if reason:
            return self._reject(event, key, reason)

        # 3. Usage cap
        cap = effective_cap(tenant.plan, tenant.monthly_cap)
        usage = tenant.usage_for(now)
        if usage >= cap:
            return self._reject(event, key, Reason.USAGE_CAP_EXCEEDED, f"{usage}/{cap}")

        # 4. Follow-up gate
        is_followup = (
            event.prior_message_at is not None
            and now - event.prior_message_at < timedelta(hours=self.config.followup_window_hours)
        )
        if is_followup and not plan.converse:
            return self._reject(event, key, Reason.FOLLOWUP_NOT_ON_PLAN)

        # 5. Intent
        prior_product = None
        if not is_comment:
            prior_product = await self.claims.last_product_reference(
                event.tenant_id, event.sender_id,
                timedelta(hours=self.config.context_window_hours),
            )
        event = await self._classify_if_needed(event)
        intent = self._resolve_intent(event, prior_product)
        if intent is None:
            return self._reject(event, key, Reason.INTENT_NOT_ELIGIBLE,
                                f'intent "{event.ai_intent or "none"}"')
        if is_comment:
            confidence = event.ai_confidence
            if confidence is None or confidence < self.config.comment_confidence_threshold:
                return self._reject(event, key, Reason.LOW_CONFIDENCE,
                                    f"Confidence {confidence} below threshold")
            if now - event.created_at > timedelta(days=self.config.comment_max_age_days):
                return self._reject(event, key, Reason.COMMENT_TOO_OLD)

        recipient, recipient_type = self._recipient_for(event)
        if not recipient:
            return self._reject(event, key, Reason.MISSING_RECIPIENT)

        # 6. Context
        reply_kind = ReplyKind.ANSWER
        product: Optional[ProductReference] = None
        if intent == Intent.STORE_QUESTION.value:
            pass
        elif is_comment:
            product = await self._comment_product(event, tenant)
            if product is None:
                return self._reject(event, key, Reason.MISSING_PRODUCT_CONTEXT,
                                    "No product mapping found and no shop domain")
        elif prior_product is not None:
            product = prior_product
        elif plan.followup and settings.followup_enabled:
            asked = await self.claims.count_clarifying(
                event.tenant_id, event.sender_id, timedelta(hours=24),
            )
            if asked >= self.config.max_clarifying_questions:
                return self._reject(event, key, Reason.CLARIFYING_LIMIT_REACHED,
                                    f"{asked} clarifying questions in the last 24h")
            reply_kind = ReplyKind.CLARIFYING
        else:
            return self._reject(event, key, Reason.MISSING_PRODUCT_CONTEXT)

        # 7. Reply text
        context = ReplyContext(
            tenant_id=event.tenant_id,
            channel=event.channel,
            intent=intent,
            reply_kind=reply_kind,
            inbound_text=event.text,
            brand_tone=tenant.brand_tone,
            shop_domain=tenant.shop_domain,
            product=product,
            is_followup=is_followup,
        )
        try:
            reply_text = await self.generator.generate(context)
        except Exception as e:
            logger.warning("reply_generation_failed", tenant_id=event.tenant_id,
                           event_key=key, error=str(e))
            return self._reject(event, key, Reason.GENERATION_FAILED, str(e))
        if not reply_text or not reply_text.strip():
            return self._reject(event, key, Reason.GENERATION_FAILED, "empty reply")

        # 8. Claim
        won = await self.claims.claim(
            event.tenant_id, key, reply_text,
            event_id=event.id,
            sender_id=event.sender_id,
            channel=event.channel,
            reply_kind=reply_kind,
            product_id=product.product_id if product else None,
            variant_id=product.variant_id if product else None,
        )
        if not won:
            return self._reject(event, key, duplicate)

        # 9. Hand-off
        return await self._deliver(event.tenant_id, key, recipient, recipient_type, reply_text)

    # ── Steps ─────────────────────────────────────────────

    def _check_channel(self, event: InboundEvent, plan: PlanConfig,
                       settings: TenantSettings) -> Optional[Reason]:
        if event.channel == Channel.COMMENT:
            if not plan.comments:
                return Reason.COMMENTS_NOT_ON_PLAN
            if not settings.comment_automation_enabled:
                return Reason.COMMENT_AUTOMATION_DISABLED
            return None
        if not settings.dm_automation_enabled:
            return Reason.DM_AUTOMATION_DISABLED
        if is_opt_out(event.text, self.config.opt_out_keywords):
            return Reason.OPTED_OUT
        return None

    async def _classify_if_needed(self, event: InboundEvent) -> InboundEvent:
        if event.ai_intent or self.classifier is None:
            return event
        try:
            result = await self.classifier.classify(event.text)
        except Exception as e:
            logger.warning("classification_failed", tenant_id=event.tenant_id,
                           event_id=event.id, error=str(e))
            return event
        return event.with_classification(result)

    def _resolve_intent(self, event: InboundEvent,
                        prior_product: Optional[ProductReference]) -> Optional[str]:
        if event.channel == Channel.COMMENT:
            return event.ai_intent if event.ai_intent in COMMENT_ELIGIBLE_INTENTS else None

        if event.ai_intent in DM_ELIGIBLE_INTENTS:
            return event.ai_intent
        if prior_product is not None:
            inferred = infer_intent_from_text(event.text)
            if inferred:
                logger.info("intent_inferred_from_text", tenant_id=event.tenant_id,
                            event_id=event.id, intent=inferred)
            return inferred
        return None

    async def _comment_product(self, event: InboundEvent, tenant: Tenant) -> Optional[ProductReference]:
        if event.media_id:
            mapping = await self.store.get_product_mapping(event.tenant_id, event.media_id)
            if mapping:
                return ProductReference(
                    product_id=mapping.product_id,
                    variant_id=mapping.variant_id,
                    product_handle=mapping.product_handle,
                    url=product_url(tenant.shop_domain, mapping.product_handle),
                    source="mapping",
                )
        homepage = product_url(tenant.shop_domain)
        if homepage:
            return ProductReference(url=homepage, source="homepage")
        return None

    @staticmethod
    def _recipient_for(event: InboundEvent) -> tuple[str, RecipientType]:
        if event.channel == Channel.COMMENT:
            # Synthetic test comments cannot take a private reply; DM the commenter
            if event.external_id.startswith(TEST_COMMENT_PREFIX) and event.sender_id:
                return event.sender_id, RecipientType.USER
            return event.external_id, RecipientType.COMMENT
        return event.sender_id, RecipientType.USER

    async def _deliver(self, tenant_id: str, key: str, recipient: str,
                       recipient_type: RecipientType, text: str) -> AutomationResult:
        if await self.limiter.try_admit(tenant_id):
            try:
                await self.sender.send(tenant_id, recipient, text, recipient_type)
            except Exception as e:
                if is_fatal(e):
                    item_id = await self._enqueue(tenant_id, key, recipient, recipient_type, text)
                    await self.queue.mark_failed(item_id, str(e))
                    return AutomationResult(
                        sent=False, reason=Reason.DELIVERY_FAILED.value, detail=str(e),
                        claimed=True, delivery="failed", event_key=key, item_id=item_id,
                    )
                logger.warning("fast_path_send_failed_queueing",
                               tenant_id=tenant_id, event_key=key, error=str(e))
            else:
                await self._count_usage(tenant_id)
                logger.info("automated_reply_sent", tenant_id=tenant_id,
                            event_key=key, delivery="immediate")
                return AutomationResult(sent=True, claimed=True, delivery="immediate",
                                        event_key=key)

        item_id = await self._enqueue(tenant_id, key, recipient, recipient_type, text)
        logger.info("automated_reply_queued", tenant_id=tenant_id, event_key=key, item_id=item_id)
        return AutomationResult(sent=True, claimed=True, delivery="queued",
                                event_key=key, item_id=item_id)

    async def _enqueue(self, tenant_id: str, key: str, recipient: str,
                       recipient_type: RecipientType, text: str) -> str:
        try:
            return await self.queue.enqueue(tenant_id, recipient, text, recipient_type)
        except Exception as e:
            # The claim is held, so no redelivery will retry this reply
            logger.error("claimed_reply_not_queued",
                         tenant_id=tenant_id,
                         event_key=key,
                         recipient=recipient,
                         reply_text=text,
                         error=str(e))
            raise

    async def _count_usage(self, tenant_id: str) -> None:
        try:
            await self.store.increment_usage(tenant_id, self._now())
        except Exception as e:
            logger.error("usage_increment_failed", tenant_id=tenant_id, error=str(e))

    def _reject(self, event: InboundEvent, key: str, reason: Reason,
                detail: Optional[str] = None) -> AutomationResult:
        logger.info("automation_skipped",
                    tenant_id=event.tenant_id,
                    event_id=event.id,
                    event_key=key,
                    reason=reason.value,
                    detail=detail)
        return AutomationResult(sent=False, reason=reason.value, detail=detail, event_key=key)
