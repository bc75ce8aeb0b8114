# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""Relevance scoring for contextual retrieval.

Six independent factors, each normalized to [0, 1], are combined with
configurable weights and capped at 1.0:

- semantic: lexical overlap of query terms with the content after
  stop-word removal, plus a flat boost when the raw query appears verbatim
- recency: exp(-days_since_last_access / 30)
- frequency: min(1, ln(access_count + 1) / ln(100))
- tag: fraction of query tags that substring-match any memory tag
- project: 1 when the session project equals the memory's project
- path: leading path segments shared with the session's current file
"""

import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from memory_bank.config import RetrievalConfig
from memory_bank.schemas import Memory, MemoryQuery, ensure_utc

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "is", "are", "was", "were", "be", "been", "have",
        "has", "had", "do", "does", "did", "will", "would", "could", "should",
        "may", "might", "can", "this", "that", "these", "those",
    }
)

_NON_WORD = re.compile(r"[^\w\s]")

# Factor values above these thresholds are named in the reason string
SEMANTIC_REASON_THRESHOLD = 0.3
RECENCY_REASON_THRESHOLD = 0.5
FREQUENCY_REASON_THRESHOLD = 0.5
TAG_REASON_THRESHOLD = 0.5
PATH_REASON_THRESHOLD = 0.5

PHRASE_BOOST = 0.3
BASIC_MATCH = "Basic match"


def extract_words(text: str) -> list[str]:
    """Lowercase terms longer than two characters, stop words removed."""
    return [
        word
        for word in _NON_WORD.sub(" ", text.lower()).split()
        if len(word) > 2 and word not in STOP_WORDS
    ]


@dataclass
class FactorScores:
    """Per-factor scores for one memory. Unevaluated factors are None."""

    semantic: Optional[float] = None
    recency: float = 0.0
    frequency: float = 0.0
    tag: Optional[float] = None
    project: Optional[float] = None
    path: Optional[float] = None


class RelevanceScorer:
    """Scores a memory against a query and session context.

    Example:
        >>> scorer = RelevanceScorer()
        >>> score, reason = scorer.score(memory, query, now)
    """

    def __init__(self, config: Optional[RetrievalConfig] = None):
        self.config = config or RetrievalConfig()

    def calculate_semantic(self, content: str, search_term: str) -> float:
        """Fraction of query terms present in the content, plus phrase boost.

        Args:
            content: Memory content.
            search_term: Raw query text.

        Returns:
            Similarity between 0.0 and 1.0.
        """
        search_words = extract_words(search_term)
        if not search_words:
            return 0.0

        content_words = set(extract_words(content))
        common = [word for word in search_words if word in content_words]
        overlap = len(common) / len(search_words)

        boost = PHRASE_BOOST if search_term.lower() in content.lower() else 0.0
        return min(overlap + boost, 1.0)

    def calculate_recency(self, last_accessed_at: datetime, now: datetime) -> float:
        days = (ensure_utc(now) - ensure_utc(last_accessed_at)).total_seconds() / 86400
        if days < 0:
            days = 0.0
        decay = self.config.recency_decay_days
        if decay <= 0:
            return 0.0
        return math.exp(-days / decay)

    def calculate_frequency(self, access_count: int) -> float:
        saturation = self.config.frequency_saturation
        if saturation <= 1:
            return 1.0 if access_count > 0 else 0.0
        return min(math.log(access_count + 1) / math.log(saturation), 1.0)

    def calculate_tags(self, memory_tags: list[str], query_tags: list[str]) -> float:
        if not query_tags:
            return 0.0
        lowered = [tag.lower() for tag in memory_tags]
        common = [
            tag for tag in query_tags if any(tag.lower() in mem_tag for mem_tag in lowered)
        ]
        return len(common) / len(query_tags)

    def calculate_path(self, memory_path: str, current_path: str) -> float:
        """Shared leading segments over the longer path's segment count."""
        memory_parts = memory_path.split("/")
        current_parts = current_path.split("/")

        common = 0
        for mine, theirs in zip(memory_parts, current_parts):
            if mine != theirs:
                break
            common += 1

        return common / max(len(memory_parts), len(current_parts))

    def factors(self, memory: Memory, query: MemoryQuery, now: datetime) -> FactorScores:
        scores = FactorScores(
            recency=self.calculate_recency(memory.last_accessed_at, now),
            frequency=self.calculate_frequency(memory.access_count),
        )
        if query.search_term:
            scores.semantic = self.calculate_semantic(memory.content, query.search_term)
        if query.tags:
            scores.tag = self.calculate_tags(memory.tags, query.tags)

        context = query.context
        if context.current_project and memory.project_context:
            scores.project = 1.0 if memory.project_context == context.current_project else 0.0
        if context.current_file and memory.file_path:
            scores.path = self.calculate_path(memory.file_path, context.current_file)
        return scores

    def score(self, memory: Memory, query: MemoryQuery, now: datetime) -> tuple[float, str]:
        """Weighted relevance and a human-readable reason.

        Returns:
            (score capped at 1.0, comma-separated reasons or "Basic match")
        """
        cfg = self.config
        f = self.factors(memory, query, now)
        total = 0.0
        reasons: list[str] = []

        if f.semantic is not None:
            total += f.semantic * cfg.semantic_weight
            if f.semantic > SEMANTIC_REASON_THRESHOLD:
                reasons.append(f"Content similarity: {f.semantic * 100:.1f}%")

        total += f.recency * cfg.recency_weight
        if f.recency > RECENCY_REASON_THRESHOLD:
            reasons.append("Recently accessed")

        total += f.frequency * cfg.frequency_weight
        if f.frequency > FREQUENCY_REASON_THRESHOLD:
            reasons.append("Frequently accessed")

        if f.tag is not None:
            total += f.tag * cfg.tag_weight
            if f.tag > TAG_REASON_THRESHOLD:
                reasons.append("Tag match")

        if f.project is not None:
            total += f.project * cfg.project_weight
            if f.project > 0:
                reasons.append("Same project")

        if f.path is not None:
            total += f.path * cfg.path_weight
            if f.path > PATH_REASON_THRESHOLD:
                reasons.append("Similar file path")

        return min(max(total, 0.0), 1.0), ", ".join(reasons) or BASIC_MATCH
