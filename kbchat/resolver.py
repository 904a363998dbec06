"""
Answer resolution pipeline.

    tenant/origin check -> KB lookup -> rank -> local answer
                                              \\-> remote fallback (timeout, 1 retry)

Local KB hits are returned verbatim with ``unsure=False``. Anything answered
by the model is always ``unsure=True``. Rejections and upstream failures are
raised as KBChatError subclasses and rendered by the HTTP layer.
"""

from __future__ import annotations

import time
from typing import Any, Optional, Sequence

from loguru import logger

from kbchat import config as CFG
from kbchat.access import AccessGuard
from kbchat.errors import UnauthorizedOriginError, UnauthorizedTenantError
from kbchat.kb_store import KBStore
from kbchat.llm_client import CompletionClient
from kbchat.logging_config import log_answer, log_llm_call
from kbchat.metrics import track_answer, track_rejection
from kbchat.models import AnswerKind, KBEntry, RankedEntry, Resolution, TenantConfig
from kbchat.prompt import FallbackPrompt
from kbchat.ranking import rank
from kbchat.registry import TenantRegistry, normalize_slug

NO_ANSWER_REPLY = "Beklager – jeg fikk ikke generert et svar."
SUGGESTION_COUNT = 3


class AnswerResolver:
    """Owns the per-request pipeline; all shared state is injected."""

    def __init__(
        self,
        registry: TenantRegistry,
        kb_store: KBStore,
        completion_client: CompletionClient,
        guard: Optional[AccessGuard] = None,
        prompt: Optional[FallbackPrompt] = None,
        max_message_chars: int = CFG.MAX_MESSAGE_CHARS,
        default_client: str = CFG.DEFAULT_CLIENT,
    ):
        self.registry = registry
        self.kb_store = kb_store
        self.completion_client = completion_client
        self.guard = guard or AccessGuard(registry)
        self.prompt = prompt or FallbackPrompt()
        self.max_message_chars = max_message_chars
        self.default_client = default_client

    def authorize(self, client_raw: Any, origin: Optional[str]) -> TenantConfig:
        """Validate tenant and origin. Raises before any KB or remote work."""
        slug = normalize_slug(client_raw or self.default_client)
        tenant = self.registry.get(slug) if slug else None
        if tenant is None:
            track_rejection("unknown_client")
            raise UnauthorizedTenantError(f"Unknown client {client_raw!r}", slug=slug)
        if origin and not self.guard.is_allowed_origin(slug, origin):
            track_rejection("origin_not_allowed")
            raise UnauthorizedOriginError(
                f"Origin {origin} not allowed for client '{slug}'", origin=origin
            )
        return tenant

    def resolve(self, client_raw: Any, message: Any, origin: Optional[str] = None) -> Resolution:
        t0 = time.time()
        tenant = self.authorize(client_raw, origin)
        text = str(message or "")[: self.max_message_chars]

        kb = self.kb_store.get(tenant.slug)
        ranked = rank(text, kb)

        if ranked and ranked[0].score > 0:
            resolution = self._local_answer(tenant, text, ranked)
        else:
            resolution = self._remote_fallback(tenant, text, kb)

        track_answer(resolution.kind.value)
        log_answer(
            client=tenant.slug,
            kind=resolution.kind.value,
            score=resolution.top_score,
            latency_ms=int((time.time() - t0) * 1000),
            suggestions=len(resolution.suggestions),
        )
        return resolution

    def _local_answer(self, tenant: TenantConfig, text: str, ranked: Sequence[RankedEntry]) -> Resolution:
        top = ranked[0]
        return Resolution(
            reply=top.answer,
            unsure=False,
            kind=AnswerKind.KB,
            client=tenant.slug,
            input_length=len(text),
            suggestions=[r.question for r in ranked[1 : 1 + SUGGESTION_COUNT]],
            top_score=top.score,
        )

    def _remote_fallback(self, tenant: TenantConfig, text: str, kb: Sequence[KBEntry]) -> Resolution:
        messages = self.prompt.build_messages(tenant.display_name, kb, text)
        t0 = time.time()
        # Raises ConfigurationError / UpstreamError; both propagate to the HTTP layer
        completion = self.completion_client.complete(messages)
        log_llm_call(
            client=tenant.slug,
            attempts=completion.attempts,
            latency_ms=int((time.time() - t0) * 1000),
            status=completion.status,
            model=self.completion_client.model,
        )
        if completion.text is None:
            logger.warning(f"Completion for '{tenant.slug}' had no usable text")
        reply = completion.text or NO_ANSWER_REPLY
        return Resolution(
            reply=reply,
            unsure=True,
            kind=AnswerKind.LLM,
            client=tenant.slug,
            input_length=len(text),
            suggestions=[e.question for e in kb[:SUGGESTION_COUNT]],
        )
