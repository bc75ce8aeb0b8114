# Copyright 2024-2025 Amiable Development
# SPDX-License-Identifier: Apache-2.0

"""
Contextual retrieval: multi-factor relevance scoring and ranking.
"""

from memory_bank.retrieval.context import ContextRetrievalEngine
from memory_bank.retrieval.scoring import STOP_WORDS, RelevanceScorer, extract_words

__all__ = [
    "ContextRetrievalEngine",
    "RelevanceScorer",
    "STOP_WORDS",
    "extract_words",
]
