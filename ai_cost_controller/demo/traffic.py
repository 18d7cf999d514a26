"""
Synthetic inference traffic for demos and local runs.

Generates requests with built-in correlations so the analytics have a
signal to find: "reporting" prompts are heavy, mostly routed to gpt-4 and
retried often, while everything else sees rare background failures.
"""

import random
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from ai_cost_controller.core.pricing import DEFAULT_PRICING, PricingTable, calculate_cost
from ai_cost_controller.storage.models import InferenceEvent

PROMPT_CLASSES = ["summarization", "extraction", "reporting", "chat"]
MODELS = ["gpt-4", "gpt-4", "claude-3-opus", "gpt-3.5-turbo"]
TENANTS = ["acme_corp", "globex", "soylent_corp", "massive_dynamic", "umbrella_inc"]
RETRY_REASONS = ["timeout", "rate_limit", "upstream_503", "context_length_exceeded"]


def generate_raw_request(seq: int, rng: random.Random, now: Optional[datetime] = None) -> Dict[str, Any]:
    """One request as the ingestion side would see it, before any rules."""
    prompt_class = rng.choice(PROMPT_CLASSES)
    model = rng.choice(MODELS)
    retries = 0
    retry_reason = None

    if prompt_class == "reporting":
        if rng.random() > 0.3:
            model = "gpt-4"
        if rng.random() > 0.65:
            retries = rng.randint(1, 3)
            retry_reason = "timeout" if rng.random() > 0.2 else "upstream_503"
    elif rng.random() > 0.98:
        retries = 1
        retry_reason = rng.choice(RETRY_REASONS)

    base_tokens = 500 + rng.random() * 1500
    tenant = "acme_corp" if rng.random() > 0.6 else rng.choice(TENANTS)

    return {
        "timestamp": (now or datetime.now()) + timedelta(milliseconds=seq),
        "request_id": f"req_{seq}",
        "tenant_id": tenant,
        "environment": "prod",
        "model": model,
        "prompt_class": prompt_class,
        "tokens_in": int(base_tokens * 0.3),
        "tokens_out": int(base_tokens * 0.7),
        "latency_ms": 200 + rng.random() * 800,
        "retries": retries,
        "retry_reason": retry_reason,
        "success": True,
    }


def to_event(request: Dict[str, Any], pricing: PricingTable = DEFAULT_PRICING) -> InferenceEvent:
    """Price a raw request into an inference event."""
    cost = calculate_cost(
        request["model"],
        request["tokens_in"],
        request["tokens_out"],
        retries=request["retries"],
        table=pricing,
    )
    return InferenceEvent(cost_usd=cost, **request)


def iter_requests(count: int, seed: Optional[int] = None) -> Iterator[Dict[str, Any]]:
    rng = random.Random(seed)
    now = datetime.now()
    for seq in range(1, count + 1):
        yield generate_raw_request(seq, rng, now)


def generate_events(
    count: int,
    seed: Optional[int] = None,
    pricing: PricingTable = DEFAULT_PRICING,
) -> List[InferenceEvent]:
    """`count` priced events with no rules applied."""
    return [to_event(request, pricing) for request in iter_requests(count, seed)]
