from __future__ import annotations

import math

from .schemas import CamelModel


def calculate_token_credits(input_tokens: int, output_tokens: int) -> int:
    return math.ceil((input_tokens + output_tokens) / 1000)


def estimate_image_credits(image_count: int) -> int:
    return math.ceil(image_count * 0.5)


class BillingDecision(CamelModel):
    """What the credits ledger needs to settle one generation."""

    should_charge: bool
    input_tokens: int = 0
    output_tokens: int = 0
    images_generated: int = 0
    credits: int = 0
    summary: str = ""


def build_billing_decision(
    *,
    should_charge: bool,
    input_tokens: int,
    output_tokens: int,
    images_generated: int,
    summary: str,
) -> BillingDecision:
    credits = calculate_token_credits(input_tokens, output_tokens) + estimate_image_credits(images_generated)
    return BillingDecision(
        should_charge=should_charge,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        images_generated=images_generated,
        credits=credits if should_charge else 0,
        summary=summary,
    )
