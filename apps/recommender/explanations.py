# apps/recommender/explanations.py
from __future__ import annotations

import logging
import re
import json as _json
from collections import Counter
from typing import Any, Dict, List, Mapping, Optional, Sequence
from uuid import UUID

from openai import OpenAI
from pydantic import BaseModel, ValidationError, field_validator

from config import settings
from domain import Candidate, CatalogItem, EvidenceRow, WatchedItem

log = logging.getLogger("explanations")

EVIDENCE_LABELS = {
    "favorite": "favorite",
    "highly_rated": "highly rewatched",
    "watched": "watched",
}

SYSTEM_PROMPT = """You are an expert film and TV curator writing personalized recommendation explanations. You have access to:
1. The user's top genres and favorite titles
2. For each recommendation, the watched titles it is most similar to (via embedding analysis)

Write a compelling 2-3 sentence explanation for each recommendation. Your explanations MUST:
- Reference the watched titles listed under "Similar to" for that recommendation
- Explain what qualities they share (themes, tone, era, style)
- Be warm and conversational, without spoiling plots

Do not invent connections to titles that are not listed.

Format: Return JSON with an "explanations" array of objects with "index" (1-based) and "explanation" fields."""


class ExplanationItem(BaseModel):
    index: int
    explanation: str

    @field_validator("explanation", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return str(v or "").strip()


class ExplanationBatch(BaseModel):
    explanations: List[ExplanationItem] = []


def _client() -> Optional[OpenAI]:
    if not settings.openai_api_key:
        log.info("OPENAI_API_KEY missing; using template explanations")
        return None
    return OpenAI(api_key=settings.openai_api_key)


def _parse_json(content: str) -> Optional[Dict[str, Any]]:
    try:
        return _json.loads(content)
    except ValueError:
        m = re.search(r"\{[\s\S]*\}", content)
        if m:
            try:
                return _json.loads(m.group(0))
            except ValueError:
                pass
        return None


def fallback_explanation(candidate: Candidate, evidence: Sequence[EvidenceRow], titles: Mapping[UUID, str]) -> str:
    kind = candidate.genres[0] if candidate.genres else "title"
    if evidence:
        top = titles.get(evidence[0].similar_item_id)
        if top:
            return (
                f'Based on your enjoyment of "{top}", this {kind} shares similar '
                "qualities you'll likely appreciate."
            )

    reasons: List[str] = []
    if candidate.similarity > 0.7:
        reasons.append("strongly matches your viewing history")
    elif candidate.similarity > 0.5:
        reasons.append("aligns with your taste")
    if candidate.novelty > 0.5:
        reasons.append("introduces some fresh genres you might enjoy exploring")
    if candidate.rating_score > 0.7:
        reasons.append("is highly acclaimed")

    if not reasons:
        return f"This {kind} offers something different from your usual picks."
    return f"This {kind} {' and '.join(reasons)}."


def _describe_year(year: Optional[int]) -> str:
    return str(year) if year else "N/A"


class ExplanationGenerator:
    """
    Writes one short explanation per selected item. Missing or unusable
    model output falls back to a template built from the component scores.
    """

    def __init__(self, client: Optional[OpenAI] = None, batch_size: Optional[int] = None, enabled: Optional[bool] = None):
        self._client = client
        self.batch_size = max(1, batch_size or settings.explanation_batch_size)
        self.enabled = settings.explanations_enabled if enabled is None else enabled

    @property
    def client(self) -> Optional[OpenAI]:
        if self._client is None and self.enabled:
            self._client = _client()
        return self._client

    def explain(
        self,
        selected: Sequence[Candidate],
        evidence: Mapping[UUID, Sequence[EvidenceRow]],
        history: Sequence[WatchedItem],
        catalog: Mapping[UUID, CatalogItem],
    ) -> Dict[UUID, str]:
        if not selected:
            return {}
        titles = {item_id: item.title for item_id, item in catalog.items()}
        context = self._taste_context(history, catalog)

        results: Dict[UUID, str] = {}
        for start in range(0, len(selected), self.batch_size):
            batch = list(selected[start : start + self.batch_size])
            texts = self._explain_batch(batch, evidence, titles, catalog, context)
            for candidate, text in zip(batch, texts):
                results[candidate.item_id] = text
        log.info("explanations_generated count=%d", len(results))
        return results

    def _taste_context(
        self, history: Sequence[WatchedItem], catalog: Mapping[UUID, CatalogItem]
    ) -> str:
        genres: Counter = Counter()
        for h in history:
            item = catalog.get(h.item_id)
            if item:
                genres.update(item.genres)
        lines = [f"Top genres: {', '.join(g for g, _ in genres.most_common(8))}", ""]
        lines.append("Most watched/favorite titles:")
        for h in history[:10]:
            item = catalog.get(h.item_id)
            if not item:
                continue
            lines.append(
                f'- "{item.title}" ({_describe_year(item.year)}) - {", ".join(item.genres)}'
            )
        return "\n".join(lines)

    def _describe(
        self,
        index: int,
        c: Candidate,
        evidence: Sequence[EvidenceRow],
        titles: Mapping[UUID, str],
        catalog: Mapping[UUID, CatalogItem],
    ) -> str:
        parts = []
        for ev in evidence:
            title = titles.get(ev.similar_item_id)
            if not title:
                continue
            parts.append(
                f'"{title}" ({ev.similarity * 100:.0f}% match, {EVIDENCE_LABELS.get(ev.evidence_type, "watched")})'
            )
        similar = ", ".join(parts) if parts else "No direct match data"
        novelty = "expands taste" if c.novelty > 0.5 else "familiar"
        if c.rating_score > 0.7:
            rating = "highly acclaimed"
        elif c.rating_score > 0.5:
            rating = "well received"
        else:
            rating = "mixed"
        item = catalog.get(c.item_id)
        overview = ((item.overview if item else None) or "No overview available")[:250]
        return (
            f'{index}. "{c.title}" ({_describe_year(c.year)})\n'
            f"   Genres: {', '.join(c.genres)}\n"
            f"   Overall match: {c.similarity * 100:.0f}% | Novelty: {novelty} | Rating: {rating}\n"
            f"   Similar to: {similar}\n"
            f"   Plot: {overview}"
        )

    def _call(self, prompt: str) -> Optional[Dict[str, Any]]:
        client = self.client
        if not client:
            return None
        try:
            resp = client.chat.completions.create(
                model=settings.openai_chat_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.7,
                response_format={"type": "json_object"},
            )
            content = resp.choices[0].message.content or "{}"
            log.debug("openai_explanations_raw_json: %s", content)
            return _parse_json(content)
        except Exception as e:
            log.warning("openai_call_failed: %s", e)
            return None

    def _explain_batch(
        self,
        batch: List[Candidate],
        evidence: Mapping[UUID, Sequence[EvidenceRow]],
        titles: Mapping[UUID, str],
        catalog: Mapping[UUID, CatalogItem],
        context: str,
    ) -> List[str]:
        fallbacks = [
            fallback_explanation(c, evidence.get(c.item_id, ()), titles) for c in batch
        ]
        if not self.enabled:
            return fallbacks

        listing = "\n\n".join(
            self._describe(i, c, evidence.get(c.item_id, ()), titles, catalog)
            for i, c in enumerate(batch, start=1)
        )
        prompt = (
            "=== USER'S TASTE PROFILE ===\n"
            f"{context}\n\n"
            "=== RECOMMENDATIONS WITH SIMILARITY EVIDENCE ===\n"
            f"{listing}\n\n"
            "Generate personalized explanations referencing the similar titles shown for each recommendation."
        )
        raw = self._call(prompt)
        if raw is None:
            return fallbacks
        try:
            parsed = ExplanationBatch(**raw)
        except (TypeError, ValidationError) as e:
            log.warning("explanations_invalid_payload: %s", e)
            return fallbacks

        by_index = {item.index: item.explanation for item in parsed.explanations if item.explanation}
        return [by_index.get(i, fallbacks[i - 1]) for i in range(1, len(batch) + 1)]
