"""LLM-backed listing copy generation."""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from openai import OpenAI

from .models import ListingFacts

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-3.5-turbo"
SYSTEM_PROMPT = "You write excellent short-term rental and real-estate listings."


class ListingGenerator(Protocol):
    """Turns a prompt into listing copy."""

    def generate(self, prompt: str) -> str:
        ...


def _bedroom_label(bedrooms: int) -> str:
    return "studio" if bedrooms == 0 else f"{bedrooms}-bedroom"


def build_listing_prompt(facts: ListingFacts) -> str:
    """Assemble the generation prompt from whichever facts were provided."""

    lines: List[str] = []
    if facts.title and facts.title.strip():
        lines.append(f"Listing title: {facts.title.strip()}")
    if facts.property_type and facts.property_type.strip():
        lines.append(f"Property type: {facts.property_type.strip()}")
    if facts.location and facts.location.strip():
        lines.append(f"Location: {facts.location.strip()}")
    if facts.bedrooms is not None:
        lines.append(f"Bedrooms: {_bedroom_label(facts.bedrooms)}")
    if facts.bathrooms is not None:
        lines.append(f"Bathrooms: {facts.bathrooms:g}")
    if facts.guests:
        lines.append(f"Sleeps: {facts.guests} guests")
    if facts.amenities:
        lines.append("Amenities: " + ", ".join(facts.amenities))
    if facts.highlights and facts.highlights.strip():
        lines.append(f"Highlights: {facts.highlights.strip()}")
    if facts.notes and facts.notes.strip():
        lines.append(f"Additional notes: {facts.notes.strip()}")

    tone = (facts.tone or "").strip() or "warm and inviting"
    details = "\n".join(f"- {line}" for line in lines) or "- No details provided"
    return f"""
You are an expert listing copywriter.

Write a polished, engaging listing description using these details:
{details}

Desired tone: {tone}.

Rules:
- Clear, engaging, and guest-focused.
- Avoid repetition and filler.
- No apologies or AI disclaimers.
- Do not invent features that were not provided.

Return only the listing text.
""".strip()


class OpenAIListingGenerator:
    """:class:`ListingGenerator` backed by the OpenAI chat completions API."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        temperature: float = 0.7,
        max_tokens: int = 700,
        client: Optional[OpenAI] = None,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key)
        return self._client

    def generate(self, prompt: str) -> str:
        response = self._get_client().chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        text = (response.choices[0].message.content or "").strip()
        logger.debug("Generated %s characters with model=%s", len(text), self._model)
        return text


__all__ = ["DEFAULT_MODEL", "ListingGenerator", "OpenAIListingGenerator", "build_listing_prompt"]
