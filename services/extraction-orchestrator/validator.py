"""Schema-driven structural and cross-reference validation of a final record.

Nothing here knows field names: every check is driven by the SchemaSpec.
Issues are data; validation never raises on bad content.
"""

import logging
import math
import re
from datetime import date
from typing import Any

from models import IssueKind, Severity, ValidationIssue, ValidationReport, ValidationSummary
from paths import expand_path, is_populated, join
from schema_spec import CrossReference, FieldSpec, SchemaSpec

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def validate(tree: dict[str, Any], spec: SchemaSpec) -> ValidationReport:
    """Validate one semantic tree against a schema spec."""
    return SchemaValidator(spec).validate(tree)


class SchemaValidator:
    def __init__(self, spec: SchemaSpec):
        self.spec = spec

    def validate(self, tree: dict[str, Any]) -> ValidationReport:
        run = _Run()
        if isinstance(tree, dict):
            run.check_object(tree, self.spec.fields, self.spec.additional_properties, "")
        else:
            run.add("", f"Record must be an object, got {_type_name(tree)}",
                    Severity.ERROR, IssueKind.STRUCTURAL)
            run.check_object(None, self.spec.fields, True, "")

        for ref in self.spec.cross_references:
            run.check_reference(tree, ref)

        total = len(run.completeness)
        completed = sum(run.completeness.values())
        score = math.floor(100 * completed / total + 0.5) if total else 0
        missing_critical = [p for p in run.completeness if p in run.critical and not run.completeness[p]]
        missing_optional = [p for p in run.completeness if p not in run.critical and not run.completeness[p]]
        has_errors = any(i.severity == Severity.ERROR for i in run.issues)

        report = ValidationReport(
            valid=not has_errors and not missing_critical,
            score=score,
            issues=run.issues,
            field_completeness=run.completeness,
            summary=ValidationSummary(
                total_fields=total,
                completed_fields=completed,
                missing_critical_fields=missing_critical,
                missing_optional_fields=missing_optional,
            ),
        )
        logger.debug(
            "Validated against %s: valid=%s score=%d issues=%d",
            self.spec.name, report.valid, report.score, len(report.issues),
        )
        return report


class _Run:
    """Mutable state of a single validation pass."""

    def __init__(self):
        self.issues: list[ValidationIssue] = []
        self.completeness: dict[str, bool] = {}
        self.critical: set[str] = set()

    def add(self, field: str, issue: str, severity: Severity, kind: IssueKind) -> None:
        self.issues.append(ValidationIssue(field=field, issue=issue, severity=severity, kind=kind))

    def check_object(
        self,
        node: dict[str, Any] | None,
        fields: dict[str, FieldSpec],
        additional_properties: bool,
        prefix: str,
    ) -> None:
        for name, fspec in fields.items():
            path = join(prefix, name)
            if node is None:
                self.track_absent(path, fspec)
            elif name not in node:
                self.check_field(path, None, fspec, exists=False)
            else:
                self.check_field(path, node[name], fspec, exists=True)

        if node is not None and not additional_properties:
            for key in node:
                if key not in fields:
                    self.add(join(prefix, key), f"Unexpected field {key!r} is not declared in the schema",
                             Severity.ERROR, IssueKind.UNEXPECTED_FIELD)

    def track_absent(self, path: str, fspec: FieldSpec) -> None:
        """Record a field under a missing parent as incomplete, without issues."""
        self.completeness[path] = False
        if fspec.critical:
            self.critical.add(path)
        for name, child in fspec.fields.items():
            self.track_absent(join(path, name), child)

    def check_field(self, path: str, value: Any, fspec: FieldSpec, exists: bool, tracked: bool = True) -> None:
        if tracked:
            self.completeness[path] = is_populated(value)
            if fspec.critical:
                self.critical.add(path)

        if value is None:
            if fspec.required:
                severity = Severity.ERROR if fspec.critical else Severity.WARNING
                issue = "Required field is null" if exists else "Missing required field"
                self.add(path, issue, severity, IssueKind.MISSING_REQUIRED)
            for name, child in fspec.fields.items():
                self.track_absent(join(path, name), child)
            return

        if not _type_ok(fspec, value):
            self.add(path, f"Expected {' or '.join(fspec.types)}, got {_type_name(value)}",
                     Severity.ERROR, IssueKind.TYPE_MISMATCH)
            for name, child in fspec.fields.items():
                self.track_absent(join(path, name), child)
            return

        if fspec.enum is not None and value not in fspec.enum:
            allowed = ", ".join(repr(v) for v in fspec.enum)
            self.add(path, f"Value {value!r} must be one of [{allowed}]",
                     Severity.ERROR, IssueKind.ENUM_VIOLATION)

        if isinstance(value, str):
            text = value.strip()
            if fspec.min_length and text and len(text) < fspec.min_length:
                self.add(path, f"Text seems too short ({len(text)} characters, expected at least {fspec.min_length})",
                         Severity.WARNING, IssueKind.STRUCTURAL)
            if fspec.format == "date" and text and not _is_date(text):
                self.add(path, "Invalid date format (should be YYYY-MM-DD)",
                         Severity.WARNING, IssueKind.STRUCTURAL)
        elif isinstance(value, dict):
            self.check_object(value, fspec.fields, fspec.additional_properties, path)
        elif isinstance(value, list):
            if fspec.min_items and len(value) < fspec.min_items:
                severity = Severity.ERROR if fspec.critical else Severity.WARNING
                self.add(path, f"Expected at least {fspec.min_items} items, found {len(value)}",
                         severity, IssueKind.STRUCTURAL)
            if fspec.items is not None:
                for i, item in enumerate(value):
                    self.check_field(f"{path}[{i}]", item, fspec.items, exists=True, tracked=False)

    def check_reference(self, tree: Any, ref: CrossReference) -> None:
        collection = ref.target.split("[]")[0]
        label = ref.label or ref.target.rsplit(".", 1)[-1]
        keys = {
            key for _, value in expand_path(tree, ref.target)
            if (key := _reference_key(value)) is not None
        }
        has_targets = bool(expand_path(tree, f"{collection}[]"))

        for path, value in expand_path(tree, ref.source):
            if value is None or (isinstance(value, str) and not value.strip()):
                continue
            key = _reference_key(value)
            if key is None:
                self.add(path, f"Reference to {label} must be a number or text, got {_type_name(value)}",
                         Severity.ERROR, IssueKind.CROSS_REFERENCE)
            elif not has_targets:
                self.add(path, f"References {label} #{value} but {collection} is empty",
                         Severity.ERROR, IssueKind.CROSS_REFERENCE)
            elif key not in keys:
                self.add(path, f"References {label} #{value}, which is not present in {collection}",
                         Severity.ERROR, IssueKind.CROSS_REFERENCE)


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _type_ok(fspec: FieldSpec, value: Any) -> bool:
    actual = _type_name(value)
    if fspec.accepts(actual):
        return True
    if actual == "integer" and fspec.accepts("number"):
        return True
    if actual == "number" and fspec.accepts("integer") and float(value).is_integer():
        return True
    return False


def _reference_key(value: Any) -> int | float | str | None:
    """Normalize a reference so 3, 3.0 and "3" all match."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, str):
        text = value.strip().lstrip("#")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return text
        return int(number) if number.is_integer() else number
    return None


def _is_date(text: str) -> bool:
    if not _DATE_RE.match(text):
        return False
    try:
        date.fromisoformat(text)
    except ValueError:
        return False
    return True


def render_report(report: ValidationReport) -> str:
    """Plain-text rendering of a validation report for terminals and logs."""
    lines = ["=" * 60, "VALIDATION REPORT", "=" * 60]
    lines.append("VALID" if report.valid else "INVALID")
    lines.append(
        f"Completeness: {report.score}% "
        f"({report.summary.completed_fields}/{report.summary.total_fields} fields)"
    )

    if report.summary.missing_critical_fields:
        lines.append("")
        lines.append("MISSING CRITICAL FIELDS:")
        lines.extend(f"  - {path}" for path in report.summary.missing_critical_fields)

    for severity in (Severity.ERROR, Severity.WARNING, Severity.INFO):
        matching = [i for i in report.issues if i.severity == severity]
        if matching:
            lines.append("")
            lines.append(f"{severity.value.upper()}S:")
            lines.extend(f"  - [{i.kind.value}] {i.field or '<root>'}: {i.issue}" for i in matching)

    lines.append("=" * 60)
    return "\n".join(lines)
