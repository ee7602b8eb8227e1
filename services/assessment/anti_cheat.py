"""Anti-cheat utilities for assessment attempts.

Includes:
- Token-level Jaccard similarity for plagiarism-style overlap checks.
- Pairwise similarity sweep over essay answers with a high-similarity threshold.
- Proctoring flags derived from an attempt's suspicious-activity event log.
"""

from collections import Counter
from typing import Dict, List, Sequence, Tuple

from packages.schemas.assessment import Attempt, ProctoringEvent, SimilarPair

SIMILARITY_THRESHOLD = 0.8
# kind -> count above which the kind is flagged
PROCTORING_THRESHOLDS: Dict[str, int] = {
    "tab_switch": 10,
    "window_blur": 10,
    "copy_paste": 5,
    "right_click": 20,
    "fullscreen_exit": 3,
}


def jaccard_similarity(a: str, b: str) -> float:
    """Compute Jaccard similarity between two strings using whitespace tokenization.

    Returns:
        A float in [0, 1] = |tokens(a) ∩ tokens(b)| / |tokens(a) ∪ tokens(b)|.
    """
    sa, sb = set(a.lower().split()), set(b.lower().split())
    inter = len(sa & sb)
    union = len(sa | sb) or 1
    return inter / union


def similarity_check(submissions: Sequence[str], threshold: float = SIMILARITY_THRESHOLD) -> List[Tuple[int, int, float]]:
    """Find highly similar submission pairs.

    Iterates over all i<j pairs and records those with similarity > `threshold`.

    Returns:
        List of tuples (i, j, sim) where i and j index into `submissions`.
    """
    n = len(submissions); out = []
    for i in range(n):
        for j in range(i+1, n):
            sim = jaccard_similarity(submissions[i], submissions[j])
            if sim > threshold:
                out.append((i, j, round(sim, 4)))
    return out


def similar_answers(attempts: Sequence[Attempt], question_id: str) -> List[SimilarPair]:
    """Pairs of attempts by different learners with near-identical text for `question_id`."""
    texts: List[Tuple[Attempt, str]] = []
    for at in attempts:
        for ans in at.answers:
            if ans.question_id == question_id and isinstance(ans.value, str) and ans.value.strip():
                texts.append((at, ans.value))
    pairs = []
    for i, j, sim in similarity_check([t for _, t in texts]):
        a, b = texts[i][0], texts[j][0]
        if a.learner_id == b.learner_id:
            continue
        pairs.append(SimilarPair(attempt_a=a.id, attempt_b=b.id, learner_a=a.learner_id,
                                 learner_b=b.learner_id, similarity=sim))
    return pairs


def proctoring_flags(events: Sequence[ProctoringEvent]) -> Dict[str, int]:
    """Event kinds whose count exceeds its threshold, mapped to the observed count."""
    counts = Counter(e.kind for e in events)
    return {k: n for k, n in counts.items() if n > PROCTORING_THRESHOLDS.get(k, 0)}
