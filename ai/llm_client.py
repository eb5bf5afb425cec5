"""
LLM Proposal Client - Decision batches from an OpenAI-compatible chat model.

Sends the cycle's prompts, retries transient failures through an injected
RetryPolicy, and splits the reply into free-text rationale and a JSON array
of decision intents. Works with any provider that speaks the OpenAI chat
completions API (OpenAI, DeepSeek, Qwen, self-hosted gateways).
"""

import json
import logging
import os
import time
from typing import Any, Optional, Protocol, Union

import openai

from ai.prompt_builder import build_system_prompt, build_user_prompt, describe_context
from ai.retry_policy import RetryPolicy
from ai.schemas import ProposalBatch, ProposalContext
from core.exceptions import FatalConfigError, ProposalSourceError
from core.models import DecisionIntent

logger = logging.getLogger(__name__)

# ─── Provider presets ──────────────────────────────────────────────────────

PROVIDER_PRESETS = {
    "openai": {"base_url": "https://api.openai.com/v1", "model": "gpt-4o-mini"},
    "deepseek": {"base_url": "https://api.deepseek.com/v1", "model": "deepseek-chat"},
    "qwen": {"base_url": "https://dashscope.aliyuncs.com/compatible-mode/v1", "model": "qwen-plus"},
}

DEFAULT_TIMEOUT_S = 120.0
DEFAULT_TEMPERATURE = 0.5
DEFAULT_MAX_TOKENS = 4000

_QUOTE_FIXES = {
    "\u201c": '"',
    "\u201d": '"',
    "\u2018": "'",
    "\u2019": "'",
}


class ProposalSource(Protocol):
    def get_proposals(self, ctx: ProposalContext) -> ProposalBatch:
        ...


# ─── Response parsing ──────────────────────────────────────────────────────

def extract_rationale(response: str) -> str:
    """Everything before the first '[' (the whole reply if there is no array)."""
    start = response.find("[")
    if start > 0:
        return response[:start].strip()
    if start == 0:
        return ""
    return response.strip()


def find_matching_bracket(text: str, start: int) -> int:
    """Index of the ']' closing the '[' at ``start``, or -1. Brackets inside strings are ignored."""
    if start >= len(text) or text[start] != "[":
        return -1
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
    return -1


def normalize_quotes(text: str) -> str:
    for bad, good in _QUOTE_FIXES.items():
        text = text.replace(bad, good)
    return text


def extract_decision_array(response: str) -> str:
    start = response.find("[")
    if start == -1:
        preview = response[:200] + ("..." if len(response) > 200 else "")
        raise ProposalSourceError(f"no JSON array in model reply: {preview}")
    end = find_matching_bracket(normalize_quotes(response), start)
    if end == -1:
        raise ProposalSourceError("unterminated JSON array in model reply")
    return normalize_quotes(response[start:end + 1].strip())


def parse_response(response: str) -> tuple[str, list[DecisionIntent], str]:
    """
    Split a model reply into (rationale, intents, raw JSON array text).

    Raises ProposalSourceError when no decision array can be decoded.
    """
    rationale = extract_rationale(response)
    raw = extract_decision_array(response)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProposalSourceError(f"decision JSON is invalid: {e}") from e
    if not isinstance(data, list):
        raise ProposalSourceError("decision JSON is not an array")

    intents = []
    for item in data:
        if not isinstance(item, dict):
            logger.warning(f"Skipping non-object decision entry: {item!r}")
            continue
        intents.append(DecisionIntent.from_dict(item))
    return rationale, intents, raw


# ─── OpenAI-compatible client ──────────────────────────────────────────────

class OpenAICompatibleProposalSource:
    """
    Proposal source backed by a chat-completions endpoint.

    The SDK's own retries are disabled; ``retry_policy`` is the only retry layer.
    """

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: Optional[str] = None,
        provider: str = "custom",
        timeout_s: float = DEFAULT_TIMEOUT_S,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        retry_policy: Optional[RetryPolicy] = None,
        client: Optional[Any] = None,
    ):
        self.provider = provider
        self.model = model
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.retry_policy = retry_policy or RetryPolicy()
        self.client = client or openai.OpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_s,
            max_retries=0,
        )

    def get_proposals(self, ctx: ProposalContext) -> ProposalBatch:
        system_prompt = build_system_prompt(ctx)
        user_prompt = build_user_prompt(ctx)
        logger.debug(f"Requesting proposals: {describe_context(ctx)}")

        start = time.perf_counter()
        try:
            content, reasoning = self.retry_policy.run(
                lambda: self._complete(system_prompt, user_prompt),
                description=f"{self.provider} proposal request",
            )
        except ProposalSourceError as e:
            e.partial = ProposalBatch(rationale="", intents=[], user_prompt=user_prompt,
                                      model_used=self.model)
            raise
        latency_ms = (time.perf_counter() - start) * 1000

        try:
            rationale, intents, raw = parse_response(content)
        except ProposalSourceError as e:
            e.partial = ProposalBatch(
                rationale=_join_rationale(reasoning, extract_rationale(content)),
                intents=[],
                user_prompt=user_prompt,
                model_used=self.model,
                latency_ms=latency_ms,
            )
            raise

        logger.info(f"{self.provider}/{self.model} returned {len(intents)} decisions in {latency_ms:.0f}ms")
        return ProposalBatch(
            rationale=_join_rationale(reasoning, rationale),
            intents=intents,
            user_prompt=user_prompt,
            raw_decisions=raw,
            model_used=self.model,
            latency_ms=latency_ms,
        )

    def _complete(self, system_prompt: str, user_prompt: str) -> tuple[str, str]:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not response.choices:
            raise ProposalSourceError("model returned no choices")
        message = response.choices[0].message
        content = message.content or ""
        if not content.strip():
            raise ProposalSourceError("model returned an empty reply")
        # DeepSeek-style reasoning models put their chain of thought here.
        reasoning = getattr(message, "reasoning_content", None) or ""
        return content, reasoning


def _join_rationale(reasoning: str, rationale: str) -> str:
    if reasoning and rationale:
        return f"{reasoning.strip()}\n\n{rationale}"
    return reasoning.strip() if reasoning else rationale


# ─── Mock Client for Testing ───────────────────────────────────────────────

class MockProposalSource:
    """Returns scripted batches in order; an Exception in the script is raised instead."""

    def __init__(self, script: Optional[list[Union[ProposalBatch, Exception]]] = None):
        self.script = list(script or [])
        self.contexts: list[ProposalContext] = []

    @property
    def call_count(self) -> int:
        return len(self.contexts)

    def get_proposals(self, ctx: ProposalContext) -> ProposalBatch:
        self.contexts.append(ctx)
        if not self.script:
            return ProposalBatch(rationale="nothing scripted", intents=[])
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


# ─── Factory ───────────────────────────────────────────────────────────────

def create_proposal_source(ai_config: dict, retry_policy: Optional[RetryPolicy] = None) -> ProposalSource:
    """
    Factory for proposal sources.

    Args:
        ai_config: the instance's ``ai`` section (provider, model, api_key or
            api_key_env, base_url, timeout_seconds)
        retry_policy: override the default 3-attempt linear policy

    Raises:
        FatalConfigError: no credentials for a real provider
    """
    provider = ai_config.get("provider", "openai")
    if provider == "mock":
        return MockProposalSource()

    preset = PROVIDER_PRESETS.get(provider, {})
    api_key = ai_config.get("api_key") or ""
    if not api_key and ai_config.get("api_key_env"):
        api_key = os.environ.get(ai_config["api_key_env"], "")
    if not api_key:
        raise FatalConfigError(f"No API key for AI provider '{provider}' (set ai.api_key or ai.api_key_env)")

    base_url = ai_config.get("base_url") or preset.get("base_url")
    model = ai_config.get("model") or preset.get("model")
    if not base_url or not model:
        raise FatalConfigError(f"AI provider '{provider}' needs both base_url and model")

    return OpenAICompatibleProposalSource(
        model=model,
        api_key=api_key,
        base_url=base_url,
        provider=provider,
        timeout_s=float(ai_config.get("timeout_seconds", DEFAULT_TIMEOUT_S)),
        temperature=float(ai_config.get("temperature", DEFAULT_TEMPERATURE)),
        max_tokens=int(ai_config.get("max_tokens", DEFAULT_MAX_TOKENS)),
        retry_policy=retry_policy,
    )
