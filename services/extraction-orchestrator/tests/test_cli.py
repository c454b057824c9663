"""Tests for the batch CLI commands and exit codes."""

import copy
import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

sys.path.insert(0, str(Path(__file__).parent.parent))

from cli import app, load_documents
from models import ErrorKind

runner = CliRunner()


@pytest.fixture
def input_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "samples"
    directory.mkdir()
    (directory / "a.pdf").write_bytes(b"%PDF-1.7 a")
    (directory / "b.pdf").write_bytes(b"%PDF-1.7 b")
    (directory / "notes.txt").write_text("not a document")
    return directory


def _run_args(input_dir: Path, tmp_path: Path, *extra: str) -> list[str]:
    return [
        "run",
        "--input-dir", str(input_dir),
        "--results-dir", str(tmp_path / "results"),
        "--progress-file", str(tmp_path / "progress.json"),
        "--concurrency", "3",
        *extra,
    ]


class TestLoadDocuments:
    def test_file_name_is_document_id(self, input_dir: Path):
        documents = load_documents(input_dir, "*.pdf")
        assert [d.document_id for d in documents] == ["a.pdf", "b.pdf"]
        assert documents[0].content == b"%PDF-1.7 a"
        assert documents[0].media_type == "application/pdf"


class TestRun:
    def test_completes_with_exit_zero(self, scripted, iep_registry, complete_iep, input_dir, tmp_path):
        extractor = scripted("primary", iep_registry, [complete_iep])
        with patch("cli.build_extractors", return_value=[extractor]):
            result = runner.invoke(app, _run_args(input_dir, tmp_path, "--effort", "high"))

        assert result.exit_code == 0, result.output
        progress = json.loads((tmp_path / "progress.json").read_text())
        assert sorted(progress["completed_documents"]) == ["a.pdf", "b.pdf"]
        assert (tmp_path / "results" / "a_extraction.json").exists()
        assert extractor.closed

    def test_document_failures_still_exit_zero(self, scripted, iep_registry, input_dir, tmp_path):
        extractor = scripted("primary", iep_registry, [ErrorKind.SCHEMA_MISMATCH])
        with patch("cli.build_extractors", return_value=[extractor]):
            result = runner.invoke(app, _run_args(input_dir, tmp_path))

        assert result.exit_code == 0, result.output
        assert "schema_mismatch" in result.output

    def test_fatal_exits_one(self, scripted, iep_registry, input_dir, tmp_path):
        extractor = scripted("primary", iep_registry, [ErrorKind.FATAL])
        with patch("cli.build_extractors", return_value=[extractor]):
            result = runner.invoke(app, _run_args(input_dir, tmp_path))

        assert result.exit_code == 1
        assert "aborted" in result.output
        progress = json.loads((tmp_path / "progress.json").read_text())
        assert progress["completed_documents"] == []

    def test_no_resume_reprocesses(self, scripted, iep_registry, complete_iep, input_dir, tmp_path):
        (tmp_path / "progress.json").write_text(json.dumps({"completed_documents": ["a.pdf", "b.pdf"]}))
        extractor = scripted("primary", iep_registry, [complete_iep])
        with patch("cli.build_extractors", return_value=[extractor]):
            resumed = runner.invoke(app, _run_args(input_dir, tmp_path))
            assert extractor.calls == 0
            fresh = runner.invoke(app, _run_args(input_dir, tmp_path, "--no-resume"))

        assert resumed.exit_code == 0
        assert fresh.exit_code == 0
        assert extractor.calls == 2

    def test_no_extractor_configured(self, input_dir, tmp_path):
        with patch("cli.build_extractors", return_value=[]):
            result = runner.invoke(app, _run_args(input_dir, tmp_path))
        assert result.exit_code == 2

    def test_unknown_extractor(self, input_dir, tmp_path):
        with patch("cli.build_extractors", side_effect=ValueError("Unknown extractor 'gpt'")):
            result = runner.invoke(app, _run_args(input_dir, tmp_path))
        assert result.exit_code == 2

    def test_missing_input_dir(self, tmp_path):
        result = runner.invoke(app, _run_args(tmp_path / "nope", tmp_path))
        assert result.exit_code == 2

    def test_bad_schema_file(self, input_dir, tmp_path):
        schema = tmp_path / "schema.json"
        schema.write_text('{"name": "broken"}')
        result = runner.invoke(app, _run_args(input_dir, tmp_path, "--schema", str(schema)))
        assert result.exit_code == 2

    def test_bad_effort_value(self, input_dir, tmp_path):
        result = runner.invoke(app, _run_args(input_dir, tmp_path, "--effort", "extreme"))
        assert result.exit_code == 2


class TestSummary:
    def test_rebuilds_from_results(self, scripted, iep_registry, complete_iep, input_dir, tmp_path):
        extractor = scripted("primary", iep_registry, [complete_iep])
        with patch("cli.build_extractors", return_value=[extractor]):
            runner.invoke(app, _run_args(input_dir, tmp_path))

        result = runner.invoke(app, ["summary", "--results-dir", str(tmp_path / "results")])

        assert result.exit_code == 0, result.output
        assert "Batch summary (2 documents)" in result.output
        assert len(list((tmp_path / "results").glob("batch_summary_*.json"))) == 2

    def test_empty_results_dir(self, tmp_path):
        result = runner.invoke(app, ["summary", "--results-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert "No results" in result.output


class TestValidate:
    def test_valid_record(self, complete_iep, tmp_path):
        path = tmp_path / "record.json"
        path.write_text(json.dumps(complete_iep))
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 0, result.output
        assert "Completeness: 100%" in result.output

    def test_saved_result_with_broken_reference(self, complete_iep, tmp_path):
        tree = copy.deepcopy(complete_iep)
        tree["services"][0]["goalNumber"] = 3
        path = tmp_path / "doc_extraction.json"
        path.write_text(json.dumps({"document_id": "doc.pdf", "tree": tree}))
        result = runner.invoke(app, ["validate", str(path)])
        assert result.exit_code == 1
        assert "References goal #3" in result.output

    def test_unreadable_file(self, tmp_path):
        result = runner.invoke(app, ["validate", str(tmp_path / "missing.json")])
        assert result.exit_code == 2
