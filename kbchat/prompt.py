#!/usr/bin/env python3
"""Prompt templates for the remote fallback.

The model is scoped to one tenant, told to answer in the user's language and
to prefer the tenant's KB, and handed that KB as a numbered Q/A block.
"""

from typing import List, Dict, Sequence

from kbchat.config import KB_CONTEXT_CHAR_LIMIT
from kbchat.models import KBEntry

EMPTY_KB_PLACEHOLDER = "(empty KB)"


class FallbackPrompt:
    """Build the three-message request used when no KB entry matches."""

    SYSTEM_TEMPLATE = """You are a concise, friendly customer-service assistant for {tenant_name}.
Answer in the user's language (Norwegian or English). Prefer facts from the Knowledge Base below.
If the answer is not present, say you're not entirely sure and offer to collect name and email for follow-up."""

    def __init__(self, context_char_limit: int = KB_CONTEXT_CHAR_LIMIT):
        self.context_char_limit = context_char_limit

    def system_instruction(self, tenant_name: str) -> str:
        return self.SYSTEM_TEMPLATE.format(tenant_name=tenant_name)

    def kb_context(self, kb: Sequence[KBEntry]) -> str:
        """Numbered Q/A pairs under a header, cut to the character budget."""
        if not kb:
            return ""
        body = "\n\n".join(
            f"[{i}] Q: {entry.question}\nA: {entry.answer}" for i, entry in enumerate(kb, start=1)
        )
        return f"Knowledge Base:\n{body}"[: self.context_char_limit]

    def build_messages(self, tenant_name: str, kb: Sequence[KBEntry], message: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system_instruction(tenant_name)},
            {"role": "system", "content": self.kb_context(kb) or EMPTY_KB_PLACEHOLDER},
            {"role": "user", "content": message},
        ]
