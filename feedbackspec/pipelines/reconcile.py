"""
Matching strategies that turn (persisted clusters, freshly computed clusters)
into a ReconcilePlan of updates, creates and orphans.
"""

from typing import List, Optional, Sequence
import logging

import numpy as np
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from feedbackspec.models.schemas import Cluster, ReconcilePlan

logger = logging.getLogger(__name__)


class PositionalMatcher:
    """
    Compatibility mode: the i-th new cluster updates the i-th persisted row.

    Extra new clusters become inserts; extra persisted rows are left as orphans.
    """

    name = "positional"

    def match(self, old: Sequence[Cluster], new: Sequence[Cluster]) -> ReconcilePlan:
        plan = ReconcilePlan()
        for index, cluster in enumerate(new):
            if index < len(old):
                plan.updates.append((old[index].id, cluster))
            else:
                plan.creates.append(cluster)
        plan.orphans = [cluster.id for cluster in old[len(new):]]
        return plan


class ThemeSimilarityMatcher:
    """
    Pair each new cluster with the most similar persisted one.

    Pair score is the larger of theme similarity (TF-IDF over character n-grams,
    cosine) and Jaccard overlap of member ids. Pairs are accepted greedily from
    the highest score down; each cluster is used at most once and pairs under
    the threshold stay unmatched.
    """

    name = "theme"

    def __init__(self, threshold: float = 0.3):
        self.threshold = threshold

    def _theme_similarity(self, old: Sequence[Cluster], new: Sequence[Cluster]) -> np.ndarray:
        themes = [c.theme.lower() for c in old] + [c.theme.lower() for c in new]
        try:
            vectorizer = TfidfVectorizer(analyzer="char_wb", ngram_range=(2, 4))
            matrix = vectorizer.fit_transform(themes)
        except ValueError as e:
            # Empty vocabulary (blank themes); fall back to member overlap only
            logger.warning(f"Theme vectorization failed, matching on members only: {e}")
            return np.zeros((len(old), len(new)))
        return cosine_similarity(matrix[:len(old)], matrix[len(old):])

    @staticmethod
    def _member_overlap(old: Sequence[Cluster], new: Sequence[Cluster]) -> np.ndarray:
        scores = np.zeros((len(old), len(new)))
        for i, old_cluster in enumerate(old):
            old_members = set(old_cluster.member_ids)
            for j, new_cluster in enumerate(new):
                union = old_members | set(new_cluster.member_ids)
                if union:
                    scores[i, j] = len(old_members & set(new_cluster.member_ids)) / len(union)
        return scores

    def score(self, old: Sequence[Cluster], new: Sequence[Cluster]) -> np.ndarray:
        if not old or not new:
            return np.zeros((len(old), len(new)))
        return np.maximum(self._theme_similarity(old, new), self._member_overlap(old, new))

    def match(self, old: Sequence[Cluster], new: Sequence[Cluster]) -> ReconcilePlan:
        scores = self.score(old, new)

        pairs = sorted(
            ((scores[i, j], i, j) for i in range(len(old)) for j in range(len(new))),
            key=lambda pair: (-pair[0], pair[1], pair[2]),
        )

        used_old, used_new = set(), set()
        plan = ReconcilePlan()
        for value, i, j in pairs:
            if value < self.threshold:
                break
            if i in used_old or j in used_new:
                continue
            used_old.add(i)
            used_new.add(j)
            plan.updates.append((old[i].id, new[j]))

        plan.creates = [cluster for j, cluster in enumerate(new) if j not in used_new]
        plan.orphans = [cluster.id for i, cluster in enumerate(old) if i not in used_old]
        return plan


MATCHERS = {
    PositionalMatcher.name: PositionalMatcher,
    ThemeSimilarityMatcher.name: ThemeSimilarityMatcher,
}


def get_matcher(name: str, threshold: Optional[float] = None):
    """Build a matcher by name ("theme" or "positional")."""
    key = (name or "").lower()
    if key not in MATCHERS:
        raise ValueError(f"Unsupported matching strategy '{name}'. Supported: {list(MATCHERS.keys())}")
    if key == ThemeSimilarityMatcher.name and threshold is not None:
        return ThemeSimilarityMatcher(threshold=threshold)
    return MATCHERS[key]()


def apply_plan(plan: ReconcilePlan, old: Sequence[Cluster]) -> List[Cluster]:
    """
    Rows to upsert for a plan. Updates keep the persisted id, created_at and
    position; creates carry no id and are appended after the last position.
    Orphans are not written.
    """
    by_id = {cluster.id: cluster for cluster in old}
    rows = []
    for old_id, cluster in plan.updates:
        previous = by_id[old_id]
        rows.append(cluster.model_copy(update={
            "id": old_id,
            "created_at": previous.created_at,
            "position": previous.position,
        }))

    next_position = max((cluster.position for cluster in old), default=-1) + 1
    for offset, cluster in enumerate(plan.creates):
        rows.append(cluster.model_copy(update={"id": None, "position": next_position + offset}))
    return rows
