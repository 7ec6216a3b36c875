"""Receipt extraction from images and PDFs using pydantic-ai."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic_ai import Agent, BinaryContent

from receipt_sync.config import get_anthropic_api_key, get_llm_model
from receipt_sync.errors import ExtractionError
from receipt_sync.models import ImageExtraction

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = """\
You are an expert at extracting information from receipt images and PDF \
receipts. Extract the following fields:

- merchant: The store or business name
- purchase_date: The date of purchase (YYYY-MM-DD)
- total: The total amount charged, as a number without currency symbol
- items: Each purchased item with name, price (number), quantity, and \
raw_price (the price exactly as printed, keeping its decimal separator)
- currency: ISO 4217 code of the currency the receipt is in, if you can tell
- currency_evidence: What on the document shows the currency. Say "symbol" \
if a currency symbol is printed, or "explicit" if a code or currency name is \
printed. Leave empty if you are guessing.
- category: A spending category (e.g. Groceries, Dining, Travel, Shopping)
- notes: Any address, city or country printed on the receipt

Leave a field empty rather than inventing a value.\
"""


class ImageExtractor(Protocol):
    """External capability that reads a receipt image or PDF."""

    def extract_receipt(self, data: bytes, media_type: str) -> ImageExtraction: ...


def create_vision_agent() -> Agent[None, ImageExtraction]:
    """Create a pydantic-ai Agent configured for receipt image extraction."""
    # Ensure API key is available (fail fast)
    get_anthropic_api_key()

    model_name = get_llm_model()
    return Agent(
        f"anthropic:{model_name}",
        output_type=ImageExtraction,
        system_prompt=_SYSTEM_PROMPT,
    )


class LlmImageExtractor:
    """ImageExtractor backed by a multimodal LLM.

    Accepts an optional agent for dependency injection in tests; otherwise
    the agent is created on first use.
    """

    def __init__(self, agent: Agent[None, ImageExtraction] | None = None) -> None:
        self._agent = agent

    @property
    def agent(self) -> Agent[None, ImageExtraction]:
        if self._agent is None:
            self._agent = create_vision_agent()
        return self._agent

    def extract_receipt(self, data: bytes, media_type: str) -> ImageExtraction:
        """Read structured receipt fields from an image or PDF attachment."""
        prompt = [
            "Extract the information from this receipt.",
            BinaryContent(data=data, media_type=media_type),
        ]
        try:
            result: Any = self.agent.run_sync(prompt)
        except Exception as exc:
            msg = f"Vision extraction failed for {media_type} attachment: {exc}"
            raise ExtractionError(msg) from exc
        logger.debug("Vision extraction complete (%d bytes)", len(data))
        return result.output  # type: ignore[no-any-return]
