# Deterministic keyword heuristic that assigns a priority tier to grievance text

from typing import Iterable, List, NamedTuple, Optional, Tuple

from .config import PRIORITY_TIERS, load_priority_keywords
from .models import Priority


class Detection(NamedTuple):
    priority: Priority
    matched_terms: List[str]


class PriorityClassifier:
    """Case-insensitive substring matching against an urgent tier and a high tier.

    Any urgent term wins outright; otherwise any high term yields ``high``;
    otherwise ``normal``. Matched terms are reported in vocabulary order.
    """

    def __init__(self, vocabulary: Optional[Iterable[Tuple[str, str]]] = None):
        if vocabulary is None:
            vocabulary = load_priority_keywords()
        self.tiers = {tier: [] for tier in PRIORITY_TIERS}
        for tier, term in vocabulary:
            if tier not in self.tiers:
                raise ValueError(f"Unknown priority tier: {tier!r}")
            term = term.strip().lower()
            if term and term not in self.tiers[tier]:
                self.tiers[tier].append(term)

    def detect(self, text: str) -> Detection:
        haystack = (text or "").lower()
        for tier in PRIORITY_TIERS:
            matched = [term for term in self.tiers[tier] if term in haystack]
            if matched:
                return Detection(Priority(tier), matched)
        return Detection(Priority.NORMAL, [])

    def detect_grievance(self, title: str, description: str) -> Detection:
        return self.detect(f"{title} {description}")
