from __future__ import annotations

import base64
import time
from collections.abc import Iterator, Sequence
from typing import Any

import httpx

from spend_stream.core.config import settings
from spend_stream.core.logging import get_logger, log_event, monotonic_ms
from spend_stream.modules.extraction.coercion import ExtractedCandidate, coerce_candidate
from spend_stream.modules.extraction.stream import iter_raw_elements, iter_sse_content

logger = get_logger(__name__)


class ExtractionError(RuntimeError):
    pass


def build_extraction_prompt(categories: Sequence[str], extra_instructions: str | None = None) -> str:
    prompt = (
        "You are a financial data extraction expert. Analyze this bank statement PDF and "
        "extract ALL transaction expenses (outgoing payments, purchases, debits).\n\n"
        "WHAT TO INCLUDE:\n"
        "- Purchases from merchants, stores, restaurants\n"
        "- Bill payments (utilities, phone, insurance)\n"
        "- ATM withdrawals and bank fees\n"
        "- Subscription services\n"
        "- Online purchases and payments\n"
        "- Foreign currency transactions\n\n"
        "WHAT TO EXCLUDE:\n"
        "- Deposits, credits, salary payments (money coming in)\n"
        '- Transfers between accounts (containing: "Transfer", "TRANSFER", "Tfr", "TFR", '
        '"To:", "From:", "Savings", "Investment", "Own Account")\n'
        "- Interest earned or dividends\n"
        "- Refunds or reversals (unless they represent a net expense)\n"
        "- Duplicate transactions or pending transactions\n\n"
        "EXTRACTION FORMAT:\n"
        "Return a JSON array only. Each element is an object with these keys:\n"
        "1. date: YYYY-MM-DD, the posted/cleared date (not pending)\n"
        '2. description: concise but informative (e.g. "Coffee purchase", '
        'not "VISA PURCHASE 123456")\n'
        "3. merchant: cleaned merchant name without codes, reference numbers or extra "
        "whitespace\n"
        f"4. category: one of {', '.join(categories)}; if uncertain, use \"Other\"\n"
        "5. original_amount: the amount before any currency conversion, as a positive number\n"
        "6. original_currency: the original 3-letter currency code (e.g. SGD, USD). "
        f"If not shown, use {settings.base_currency}.\n\n"
        "QUALITY CHECKS:\n"
        "- Verify each transaction is a genuine expense (money leaving the account)\n"
        "- Ensure dates are valid and properly formatted\n"
        "- Check that amounts are reasonable and positive\n"
        "- Confirm currency codes are valid 3-letter codes\n"
        "- Validate categories match the available options exactly"
    )
    extra = (extra_instructions or "").strip()
    if extra:
        prompt += f"\n\nADDITIONAL USER INSTRUCTIONS:\n{extra}"
    return prompt


def _build_payload(
    body: bytes, *, file_name: str, categories: Sequence[str], extra_instructions: str | None
) -> dict[str, Any]:
    encoded = base64.b64encode(body).decode("ascii")
    return {
        "model": settings.openai_model,
        "temperature": 0,
        "stream": True,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": build_extraction_prompt(categories, extra_instructions)},
                    {
                        "type": "file",
                        "file": {
                            "filename": file_name,
                            "file_data": f"data:application/pdf;base64,{encoded}",
                        },
                    },
                ],
            }
        ],
    }


def stream_statement_candidates(
    body: bytes,
    *,
    categories: Sequence[str],
    file_name: str = "statement.pdf",
    extra_instructions: str | None = None,
    client: httpx.Client | None = None,
) -> Iterator[ExtractedCandidate]:
    """Lazily yield one coerced candidate per array element the model streams.

    Transport failures (no API key, connection errors, non-2xx responses, a
    stream cut short) raise ``ExtractionError``. Malformed elements never do.
    """
    if not settings.openai_api_key and client is None:
        raise ExtractionError("AI extraction is not configured (missing OPENAI_API_KEY)")

    payload = _build_payload(
        body, file_name=file_name, categories=categories, extra_instructions=extra_instructions
    )
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key or ''}",
        "Content-Type": "application/json",
        "Accept": "text/event-stream",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    owns_client = client is None
    http = client or httpx.Client(timeout=settings.extraction_timeout_seconds)

    start = time.monotonic()
    produced = 0
    log_event(logger, "extraction.stream.start", model=settings.openai_model, byte_size=len(body))
    try:
        with http.stream("POST", url, headers=headers, json=payload) as resp:
            resp.raise_for_status()
            for raw in iter_raw_elements(iter_sse_content(resp.iter_lines())):
                produced += 1
                yield coerce_candidate(raw, categories)
    except httpx.HTTPStatusError as e:
        raise ExtractionError(
            f"AI extraction failed with HTTP {e.response.status_code}"
        ) from e
    except httpx.HTTPError as e:
        raise ExtractionError(f"AI extraction stream failed: {type(e).__name__}") from e
    finally:
        if owns_client:
            http.close()
        log_event(
            logger,
            "extraction.stream.end",
            elements=produced,
            duration_ms=monotonic_ms(start),
        )
