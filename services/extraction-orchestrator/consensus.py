"""Whole-record consensus across extraction candidates.

The highest-scoring candidate wins outright; there is no field-level
merging. Disagreements are still listed as conflicted fields for review.
"""

import logging
from collections.abc import Sequence

from models import ConfidenceScore, ConsensusResult, ExtractionResult
from paths import flatten
from scoring import DEFAULT_RUBRIC, ScoringRubric, score

logger = logging.getLogger(__name__)

_MISSING = object()


class NoExtractionAvailable(Exception):
    """Consensus was asked to pick from zero candidates."""


class ConsensusEngine:
    """Picks a winner among candidates.

    ``priority`` is the preferred extractor order used only to break exact
    score ties. Extractors not listed rank after listed ones, by name.
    """

    def __init__(self, priority: Sequence[str] = (), rubric: ScoringRubric = DEFAULT_RUBRIC):
        self._priority = list(priority)
        self._rubric = rubric

    def reconcile(self, results: Sequence[ExtractionResult]) -> ConsensusResult:
        if not results:
            raise NoExtractionAvailable("No extraction results to reconcile")

        scores = {r.extractor: score(r, self._rubric) for r in results}

        if len(results) == 1:
            only = results[0]
            return ConsensusResult(
                tree=only.tree,
                winner=only.extractor,
                reason="single_candidate",
                scores=scores,
                conflicted_fields=[],
            )

        ranked = sorted(results, key=lambda r: self._rank_key(r, scores[r.extractor]))
        winner, runner_up = ranked[0], ranked[1]
        if scores[winner.extractor].score > scores[runner_up.extractor].score:
            reason = "highest_confidence"
        else:
            reason = "tie_break_priority"

        conflicted = conflicted_fields(results)
        logger.info(
            "Consensus picked %s (%s): %s; %d conflicted fields",
            winner.extractor,
            reason,
            ", ".join(f"{name}={s.score:g}" for name, s in sorted(scores.items())),
            len(conflicted),
        )
        return ConsensusResult(
            tree=winner.tree,
            winner=winner.extractor,
            reason=reason,
            scores=scores,
            conflicted_fields=conflicted,
        )

    def _rank_key(self, result: ExtractionResult, confidence: ConfidenceScore) -> tuple:
        if result.extractor in self._priority:
            preference = self._priority.index(result.extractor)
        else:
            preference = len(self._priority)
        return (-confidence.score, preference, result.extractor)


def conflicted_fields(results: Sequence[ExtractionResult]) -> list[str]:
    """Leaf paths that are missing from, or valued differently in, any candidate."""
    flat = [flatten(r.tree) for r in results]
    all_paths = set().union(*flat)
    conflicted = []
    for path in all_paths:
        values = [f.get(path, _MISSING) for f in flat]
        first = values[0]
        if any(v is _MISSING for v in values) or any(v != first for v in values[1:]):
            conflicted.append(path)
    return sorted(conflicted)
