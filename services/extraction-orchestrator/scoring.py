"""Rubric-based confidence scoring for a single extraction result.

The score estimates completeness, not correctness. It is deterministic and
capped at MAX_SCORE: no rubric gets to claim full certainty.
"""

from typing import Any, Literal

from pydantic import BaseModel, model_validator

from models import ConfidenceScore, ExtractionResult, SectionScore
from paths import is_populated, lookup

MAX_SCORE = 95.0
MAX_ITEM_BONUS = 10.0


class SectionRule(BaseModel):
    """How one top-level section of the tree contributes to the score.

    ``object``    present and non-empty mapping earns ``weight``.
    ``list``      non-empty list earns ``weight - item_bonus``, plus
                  ``item_bonus`` scaled by the fraction of items that have
                  every ``required_item_fields`` populated.
    ``narrative`` mapping of text fields (or a single text) earns ``weight``
                  when any text is present; each text shorter than
                  ``min_text_length`` is penalized as likely truncated.
    """

    path: str
    kind: Literal["object", "list", "narrative"]
    weight: float
    item_bonus: float = 0.0
    required_item_fields: list[str] = []
    min_items: int = 0
    min_text_length: int = 0
    empty_penalty: float = 0.0
    short_list_penalty: float = 0.0
    short_text_penalty: float = 0.0

    @model_validator(mode="after")
    def _check_bonus(self) -> "SectionRule":
        if self.item_bonus > min(self.weight, MAX_ITEM_BONUS):
            raise ValueError(
                f"{self.path}: item_bonus must be at most min(weight, {MAX_ITEM_BONUS:g})"
            )
        return self


class ScoringRubric(BaseModel):
    sections: list[SectionRule]

    @model_validator(mode="after")
    def _check_total(self) -> "ScoringRubric":
        total = sum(rule.weight for rule in self.sections)
        if abs(total - 100.0) > 1e-9:
            raise ValueError(f"Section weights must sum to 100, got {total:g}")
        return self


DEFAULT_RUBRIC = ScoringRubric(sections=[
    SectionRule(path="studentInfo", kind="object", weight=25, empty_penalty=20),
    SectionRule(
        path="goals", kind="list", weight=25, item_bonus=10,
        required_item_fields=["goalArea", "baseline", "description"],
        min_items=2, empty_penalty=15, short_list_penalty=5,
    ),
    SectionRule(
        path="accommodations", kind="list", weight=15, item_bonus=5,
        required_item_fields=["title", "description"],
        empty_penalty=5, short_list_penalty=2,
    ),
    SectionRule(
        path="services", kind="list", weight=15, item_bonus=5,
        required_item_fields=["serviceType", "frequency", "provider"],
        empty_penalty=5, short_list_penalty=2,
    ),
    SectionRule(
        path="presentLevels", kind="narrative", weight=20,
        min_text_length=50, empty_penalty=10, short_text_penalty=3,
    ),
])


def score(result: ExtractionResult, rubric: ScoringRubric = DEFAULT_RUBRIC) -> ConfidenceScore:
    """Score one extraction result against a rubric."""
    breakdown: dict[str, SectionScore] = {}
    for rule in rubric.sections:
        breakdown[rule.path] = _score_section(rule, lookup(result.tree, rule.path))

    total = sum(s.awarded + s.bonus - s.penalty for s in breakdown.values())
    final = min(max(round(total, 2), 0.0), MAX_SCORE)
    return ConfidenceScore(score=final, breakdown=breakdown)


def _score_section(rule: SectionRule, value: Any) -> SectionScore:
    section = SectionScore(section=rule.path, weight=rule.weight)

    if rule.kind == "object":
        if isinstance(value, dict) and any(is_populated(v) for v in value.values()):
            section.awarded = rule.weight
        else:
            section.penalty = rule.empty_penalty
            section.notes.append("missing or empty")
        return section

    if rule.kind == "list":
        if not isinstance(value, list) or not value:
            section.penalty = rule.empty_penalty
            section.notes.append("missing" if value is None else "empty list")
            return section
        section.awarded = rule.weight - rule.item_bonus
        if rule.required_item_fields:
            complete = sum(
                1 for item in value
                if isinstance(item, dict)
                and all(is_populated(item.get(f)) for f in rule.required_item_fields)
            )
            section.bonus = round(rule.item_bonus * complete / len(value), 2)
            if complete < len(value):
                section.notes.append(f"{len(value) - complete}/{len(value)} items incomplete")
        else:
            section.bonus = rule.item_bonus
        if len(value) < rule.min_items:
            section.penalty = rule.short_list_penalty
            section.notes.append(f"only {len(value)} items, expected at least {rule.min_items}")
        return section

    # narrative
    if isinstance(value, dict):
        texts = {k: v for k, v in value.items() if isinstance(v, str) and v.strip()}
    elif isinstance(value, str) and value.strip():
        texts = {rule.path: value}
    else:
        texts = {}
    if not texts:
        section.penalty = rule.empty_penalty
        section.notes.append("no narrative text")
        return section
    section.awarded = rule.weight
    short = sorted(k for k, v in texts.items() if len(v.strip()) < rule.min_text_length)
    if short:
        section.penalty = rule.short_text_penalty * len(short)
        section.notes.append(f"likely truncated: {', '.join(short)}")
    return section
