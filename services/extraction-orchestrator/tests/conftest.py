"""Shared test fixtures for extraction orchestrator tests."""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path so we can import the modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import SERVICE_DIR
from extractors import Extractor
from models import ErrorKind, ExtractionError, Usage
from schema_spec import SchemaRegistry, SchemaSpec, load_schema
from scoring import ScoringRubric, SectionRule

LONG_TEXT = "Reads grade-level passages with support and answers literal questions accurately."
SHORT_TEXT = "Healthy."


class ScriptedExtractor(Extractor):
    """Fake provider that plays back a script of outcomes, one per call.

    A script entry is a tree (dict, returned as JSON text), an ErrorKind
    (returned as an ExtractionError) or a raw string. The last entry
    repeats once the script runs out. ``per_document`` overrides the script
    for given document ids; ``delay`` is seconds, or a mapping by document id.
    """

    def __init__(self, name, schemas, script, delay=0.0, usage=None, tracker=None,
                 per_document=None, **kwargs):
        super().__init__(name, schemas, **kwargs)
        self.script = list(script)
        self.per_document = per_document or {}
        self.delay = delay
        self.usage = usage or Usage(input_tokens=100, output_tokens=50)
        self.tracker = tracker
        self.calls = 0
        self.closed = False

    async def _extract(self, request, spec):
        index = min(self.calls, len(self.script) - 1)
        self.calls += 1
        delay = self.delay.get(request.document_id, 0.0) if isinstance(self.delay, dict) else self.delay
        if self.tracker is not None:
            self.tracker.enter()
        try:
            if delay:
                await asyncio.sleep(delay)
        finally:
            if self.tracker is not None:
                self.tracker.leave()

        step = self.per_document.get(request.document_id, self.script[index])
        if isinstance(step, ErrorKind):
            return self.error(step, f"scripted {step.value}")
        if isinstance(step, ExtractionError):
            return step
        if isinstance(step, dict):
            return json.dumps(step), self.usage
        return step, self.usage

    async def aclose(self):
        self.closed = True


class InFlightTracker:
    """Counts concurrent calls and remembers the peak."""

    def __init__(self):
        self.current = 0
        self.peak = 0

    def enter(self):
        self.current += 1
        self.peak = max(self.peak, self.current)

    def leave(self):
        self.current -= 1


@pytest.fixture
def iep_spec() -> SchemaSpec:
    return load_schema(SERVICE_DIR / "schemas" / "iep.json")


@pytest.fixture
def iep_registry(iep_spec: SchemaSpec) -> SchemaRegistry:
    return SchemaRegistry([iep_spec])


@pytest.fixture
def complete_iep() -> dict:
    """An IEP record with every declared field populated."""
    return {
        "studentInfo": {
            "name": "Jordan Lee",
            "birthdate": "2012-04-09",
            "school": "Lincoln Middle School",
            "grade": "6",
            "gender": "Female",
            "studentId": "S-1042",
            "district": "North Valley",
            "primaryLanguage": "English",
            "parentGuardianInfo": [
                {"name": "Sam Lee", "relationship": "Parent", "phone": "555-0100", "email": "sam@example.com"},
            ],
        },
        "reviewDates": {
            "annualReview": "2024-05-01",
            "effectiveUntil": "2025-04-30",
            "reevaluationDueDate": "2026-05-01",
            "lastEvaluationDate": "2023-05-01",
        },
        "caseManager": {
            "name": "Pat Kim",
            "email": "pkim@example.org",
            "phone": "555-0101",
            "position": "Special Education Teacher",
        },
        "presentLevels": {
            "academics": LONG_TEXT,
            "adaptiveDailyLivingSkills": "Manages personal belongings and follows the daily schedule independently.",
            "communicationDevelopment": "Expresses needs in full sentences and participates in small group talks.",
            "grossFineMotorDevelopment": "Writes legibly for short tasks and uses a keyboard for longer assignments.",
            "health": "No health concerns reported by the school nurse or parents this school year.",
            "socialEmotionalBehavioral": "Works cooperatively with peers and uses coping strategies when frustrated.",
            "vocational": "Explores career interests through the middle school advisory program this year.",
        },
        "goals": [
            {
                "goalNumber": 1,
                "goalArea": "Reading",
                "baseline": "Reads 80 words per minute",
                "description": "Will read 110 words per minute with 95% accuracy",
                "targetDate": "2025-04-30",
                "targetPercentage": 95,
                "shortTermObjectives": [
                    {"description": "Read 95 wpm", "criteria": "4 of 5 probes", "evaluation": "Curriculum probes"},
                ],
            },
            {
                "goalNumber": 2,
                "goalArea": "Math",
                "baseline": "Solves one-step problems",
                "description": "Will solve two-step word problems with 80% accuracy",
                "targetDate": "2025-04-30",
                "targetPercentage": 80,
                "shortTermObjectives": [
                    {"description": "Solve 5 problems", "criteria": "80% accuracy", "evaluation": "Work samples"},
                ],
            },
        ],
        "accommodations": [
            {
                "title": "Extended time",
                "description": "Time and a half on tests and quizzes",
                "category": "Testing",
                "frequency": "Daily",
                "location": "General education classroom",
            },
        ],
        "services": [
            {
                "serviceType": "Specialized Academic Instruction",
                "goalNumber": 1,
                "durationMinutes": 30,
                "frequency": "3x weekly",
                "provider": "Special Education Teacher",
                "sessionType": "Small group",
                "sessionLocation": "Resource room",
                "startDate": "2024-05-01",
                "endDate": "2025-04-30",
            },
        ],
        "standardizedAssessments": [
            {"assessmentName": "MAP Reading", "date": "2024-01-15", "scores": "RIT 205", "comments": "Fall window"},
        ],
    }


@pytest.fixture
def report_rubric() -> ScoringRubric:
    return ScoringRubric(sections=[
        SectionRule(path="studentInfo", kind="object", weight=20, empty_penalty=10),
        SectionRule(
            path="goals", kind="list", weight=30, item_bonus=10,
            required_item_fields=["goalArea", "description", "targetDate"],
            min_items=2, empty_penalty=10, short_list_penalty=4,
        ),
        SectionRule(
            path="services", kind="list", weight=20, item_bonus=10,
            required_item_fields=["serviceType", "frequency"], empty_penalty=5,
        ),
        SectionRule(
            path="presentLevels", kind="narrative", weight=20,
            min_text_length=50, empty_penalty=10, short_text_penalty=3,
        ),
        SectionRule(path="accommodations", kind="list", weight=10),
    ])


@pytest.fixture
def report_spec(report_rubric: ScoringRubric) -> SchemaSpec:
    """Small progress-report schema with its own scoring rubric."""
    return SchemaSpec.model_validate({
        "name": "report",
        "fields": {
            "studentInfo": {
                "type": "object", "required": True, "critical": True,
                "fields": {
                    "name": {"type": "string", "required": True, "critical": True},
                    "grade": {"type": ["string", "null"]},
                    "school": {"type": ["string", "null"]},
                },
            },
            "presentLevels": {
                "type": "object", "required": True,
                "fields": {
                    "academics": {"type": ["string", "null"], "min_length": 50},
                    "health": {"type": ["string", "null"], "min_length": 50},
                },
            },
            "goals": {
                "type": "array", "required": True, "critical": True,
                "items": {
                    "type": "object",
                    "fields": {
                        "goalNumber": {"type": ["integer", "null"]},
                        "goalArea": {"type": "string", "required": True},
                        "description": {"type": "string", "required": True},
                        "targetDate": {"type": ["string", "null"], "format": "date"},
                    },
                },
            },
            "services": {
                "type": ["array", "null"],
                "items": {
                    "type": "object",
                    "fields": {
                        "serviceType": {"type": "string", "required": True},
                        "goalNumber": {"type": ["integer", "null"]},
                        "frequency": {"type": ["string", "null"]},
                    },
                },
            },
        },
        "cross_references": [
            {"source": "services[].goalNumber", "target": "goals[].goalNumber", "label": "goal"},
        ],
        "scoring": report_rubric.model_dump(),
    })


@pytest.fixture
def report_registry(report_spec: SchemaSpec) -> SchemaRegistry:
    return SchemaRegistry([report_spec])


@pytest.fixture
def tree_72() -> dict:
    """Scores 72 under report_rubric; validates to 85% with one short-text warning."""
    return {
        "studentInfo": {"name": "Jordan Lee", "grade": "6", "school": None},
        "presentLevels": {"academics": LONG_TEXT, "health": SHORT_TEXT},
        "goals": [
            {"goalNumber": 1, "goalArea": "Reading", "description": "Read 110 wpm", "targetDate": "2025-06-01"},
            {"goalNumber": 2, "goalArea": "Math", "description": "Two-step problems", "targetDate": None},
        ],
        "services": [
            {"serviceType": "Specialized Academic Instruction", "goalNumber": 1, "frequency": None},
        ],
    }


@pytest.fixture
def tree_58() -> dict:
    """Scores 58 under report_rubric."""
    return {
        "studentInfo": {"name": "Jordan Lee", "grade": "6", "school": "Lincoln Middle School"},
        "presentLevels": {"academics": LONG_TEXT, "health": SHORT_TEXT},
        "goals": [
            {"goalNumber": 1, "goalArea": "Reading", "description": "Read 110 wpm", "targetDate": "2025-06-01"},
        ],
    }


@pytest.fixture
def scripted():
    """Factory for ScriptedExtractor instances."""
    def make(name, schemas, script, **kwargs) -> ScriptedExtractor:
        return ScriptedExtractor(name, schemas, script, **kwargs)
    return make


@pytest.fixture
def tracker() -> InFlightTracker:
    return InFlightTracker()
