"""Schema-driven extraction instructions shared by every provider adapter.

Field names come from the schema spec, never from this module.
"""

import json

from models import Effort
from schema_spec import FieldSpec, SchemaSpec

_JSON_SUFFIX = """

CRITICAL OUTPUT RULES:
- Return ONLY a single valid JSON object. No other text before or after.
- Do NOT include any thinking, preamble, explanation, or markdown formatting.
- Do NOT wrap in code fences. Just raw JSON.
- Every top-level key listed as required MUST be present, even if its value is an empty list.
- Use null for values that are not present in the document. Do not invent data."""

_EFFORT_HINTS: dict[Effort, str] = {
    Effort.LOW: "Prioritize the required sections; skip optional detail when unclear.",
    Effort.MEDIUM: "Extract every section you can find, using exact text from the document.",
    Effort.HIGH: (
        "Read the whole document carefully, including tables and checkboxes. "
        "Extract every section and every list item using exact text from the document. "
        "Do not paraphrase or summarize."
    ),
}


def describe(fspec: FieldSpec) -> object:
    """Compact JSON-able outline of a field declaration."""
    if fspec.fields:
        return {name: describe(child) for name, child in fspec.fields.items()}
    if fspec.items is not None:
        return [describe(fspec.items)]
    if fspec.enum is not None:
        return " | ".join(str(v) for v in fspec.enum)
    return fspec.description or " or ".join(fspec.types)


def build_prompt(spec: SchemaSpec, effort: Effort = Effort.MEDIUM) -> str:
    outline = {name: describe(fspec) for name, fspec in spec.fields.items()}
    required = ", ".join(spec.required_top_level_keys) or "(none)"
    return (
        f"You are analyzing a {spec.description or spec.name} document. "
        "Extract its contents and return them as a JSON object with EXACTLY this structure:\n\n"
        f"{json.dumps(outline, indent=2, ensure_ascii=False)}\n\n"
        f"Required top-level keys: {required}.\n"
        f"{_EFFORT_HINTS[effort]}"
        f"{_JSON_SUFFIX}"
    )
