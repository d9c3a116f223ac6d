"""
Unit tests for OutputComparator.

Tests cover:
- Identical results
- Severity classification of each discrepancy type
- Normalization of timestamps and whitespace
- Tolerances and size-only comparison
- Malformed input handling
- Markdown report generation
- Comparing files on disk
"""

from pathlib import Path

import pytest

from engineswitch.comparator import ComparatorConfig, ContentNormalizer, OutputComparator
from engineswitch.exceptions import ConfigurationError
from engineswitch.models import DiscrepancySeverity, ExecutionResult, GeneratedFile


def _result(
    *,
    success: bool = True,
    models: tuple = ({"table_name": "users", "columns": ["id"]},),
    files: tuple = (GeneratedFile("models/users.py", "class User: ...\n"),),
    seconds: float = 0.1,
) -> ExecutionResult:
    return ExecutionResult(
        success=success,
        generated_models=models,
        generated_files=files,
        execution_time_seconds=seconds,
    )


@pytest.fixture
def comparator() -> OutputComparator:
    return OutputComparator()


class TestComparatorConfig:
    """Tests for ComparatorConfig validation."""

    def test_defaults(self) -> None:
        """Default tolerances."""
        config = ComparatorConfig()

        assert config.performance_tolerance_ms == 50.0
        assert config.ignore_timestamp_differences is True
        assert config.compare_file_checksums is True

    def test_negative_tolerance_rejected(self) -> None:
        """Negative tolerances are invalid."""
        with pytest.raises(ConfigurationError):
            ComparatorConfig(performance_tolerance_ms=-1)

    def test_unknown_override_rejected(self) -> None:
        """Unknown keyword overrides raise ConfigurationError."""
        with pytest.raises(ConfigurationError):
            OutputComparator(no_such_option=True)


class TestIdenticalResults:
    """Tests for comparing equal results."""

    def test_identical_results_match(self, comparator: OutputComparator) -> None:
        """compare(x, x) matches with no discrepancies."""
        result = _result()

        comparison = comparator.compare(result, result)

        assert comparison.overall_match is True
        assert comparison.critical_discrepancies == ()
        assert comparison.warning_discrepancies == ()
        assert comparison.info_discrepancies == ()
        assert comparison.performance_analysis["within_tolerance"] is True

    def test_dict_results_are_accepted(self, comparator: OutputComparator) -> None:
        """Plain dict results are compared like ExecutionResults."""
        payload = {
            "success": True,
            "generated_models": [{"table_name": "users"}],
            "generated_files": [{"path": "a.py", "content": "x = 1\n"}],
            "execution_time": 0.2,
        }

        comparison = comparator.compare(payload, dict(payload))

        assert comparison.overall_match is True
        assert comparison.file_comparisons[0]["path"] == "a.py"


class TestCriticalDiscrepancies:
    """Tests for discrepancies that fail the comparison."""

    def test_success_status_differs(self, comparator: OutputComparator) -> None:
        """Different success flags are critical."""
        comparison = comparator.compare(_result(), _result(success=False))

        assert comparison.overall_match is False
        assert [d.type for d in comparison.critical_discrepancies] == ["success_status"]

    def test_file_content_differs(self, comparator: OutputComparator) -> None:
        """Different content in a shared file is critical."""
        candidate = _result(files=(GeneratedFile("models/users.py", "class Person: ...\n"),))

        comparison = comparator.compare(_result(), candidate)

        assert comparison.overall_match is False
        discrepancy = comparison.critical_discrepancies[0]
        assert discrepancy.type == "file_content"
        assert discrepancy.description == "File content differs: models/users.py"
        assert comparison.file_comparisons[0]["matches"] is False
        assert (
            comparison.file_comparisons[0]["legacy_checksum"]
            != comparison.file_comparisons[0]["new_checksum"]
        )

    def test_missing_and_extra_files(self, comparator: OutputComparator) -> None:
        """Files on one side only are critical."""
        legacy = _result(files=(GeneratedFile("a.py", "a"), GeneratedFile("b.py", "b")))
        candidate = _result(files=(GeneratedFile("a.py", "a"), GeneratedFile("c.py", "c")))

        comparison = comparator.compare(legacy, candidate)

        descriptions = [d.description for d in comparison.critical_discrepancies]
        assert "File only generated by legacy engine: b.py" in descriptions
        assert "File only generated by new engine: c.py" in descriptions
        assert comparison.overall_match is False

    def test_file_count_difference_tolerated(self) -> None:
        """acceptable_file_count_difference absorbs extra files when shared files match."""
        comparator = OutputComparator(acceptable_file_count_difference=1)
        legacy = _result(files=(GeneratedFile("a.py", "a"),))
        candidate = _result(files=(GeneratedFile("a.py", "a"), GeneratedFile("extra.py", "")))

        comparison = comparator.compare(legacy, candidate)

        assert comparison.overall_match is True

    def test_malformed_result(self, comparator: OutputComparator) -> None:
        """A result without success produces comparison_error, not an exception."""
        comparison = comparator.compare({"generated_files": []}, _result())

        assert comparison.overall_match is False
        assert comparison.critical_discrepancies[0].type == "comparison_error"

    def test_unsupported_type(self, comparator: OutputComparator) -> None:
        """Non-result inputs produce comparison_error."""
        comparison = comparator.compare(_result(), "not a result")  # type: ignore[arg-type]

        assert comparison.critical_discrepancies[0].type == "comparison_error"


class TestWarnings:
    """Tests for warning-level discrepancies."""

    def test_model_count_differs(self, comparator: OutputComparator) -> None:
        """A different model count with equal file sets is a warning."""
        candidate = _result(
            models=({"table_name": "users", "columns": ["id"]}, {"table_name": "orders"})
        )

        comparison = comparator.compare(_result(), candidate)

        assert comparison.overall_match is True
        assert [d.type for d in comparison.warning_discrepancies] == ["model_count"]
        assert comparison.warning_discrepancies[0].description == (
            "Model count differs: legacy=1, new=2"
        )

    def test_model_structure_differs(self, comparator: OutputComparator) -> None:
        """A shared model with different fields is a warning."""
        candidate = _result(models=({"table_name": "users", "columns": ["id", "email"]},))

        comparison = comparator.compare(_result(), candidate)

        assert comparison.overall_match is True
        assert comparison.warning_discrepancies[0].type == "model_structure"
        assert comparison.model_comparisons[0] == {
            "model": "users",
            "matches": False,
            "differences": ["columns"],
        }

    def test_performance_regression(self, comparator: OutputComparator) -> None:
        """A candidate much slower than legacy is a warning."""
        comparison = comparator.compare(_result(seconds=0.1), _result(seconds=0.3))

        assert comparison.overall_match is True
        warning = comparison.warning_discrepancies[0]
        assert warning.type == "performance_regression"
        assert warning.severity == DiscrepancySeverity.WARNING
        assert "200ms slower" in warning.description
        assert comparison.performance_analysis["legacy_faster"] is True

    def test_failure_and_slowness_are_classified_separately(
        self, comparator: OutputComparator
    ) -> None:
        """Success mismatch is critical while slowness stays a warning."""
        comparison = comparator.compare(_result(seconds=0.1), _result(success=False, seconds=0.5))

        assert len(comparison.critical_discrepancies) == 1
        assert len(comparison.warning_discrepancies) == 1
        assert len(comparison.info_discrepancies) == 0


class TestInfo:
    """Tests for informational discrepancies."""

    def test_faster_candidate_is_info(self, comparator: OutputComparator) -> None:
        """A faster candidate beyond tolerance is informational."""
        comparison = comparator.compare(_result(seconds=0.3), _result(seconds=0.1))

        assert comparison.overall_match is True
        assert [d.type for d in comparison.info_discrepancies] == ["execution_time"]
        assert comparison.performance_analysis["new_faster"] is True

    def test_small_slowdown_below_ratio_is_info(self, comparator: OutputComparator) -> None:
        """A slowdown beyond tolerance but below the regression ratio is info."""
        comparison = comparator.compare(_result(seconds=1.0), _result(seconds=1.2))

        assert comparison.warning_discrepancies == ()
        assert comparison.info_discrepancies[0].type == "execution_time"

    def test_within_tolerance_is_silent(self, comparator: OutputComparator) -> None:
        """Differences within tolerance are not reported."""
        comparison = comparator.compare(_result(seconds=0.100), _result(seconds=0.140))

        assert comparison.discrepancies == ()
        assert comparison.performance_analysis["delta_ms"] == pytest.approx(40.0)


class TestNormalization:
    """Tests for content normalization."""

    def test_timestamps_are_masked(self, comparator: OutputComparator) -> None:
        """Generated-at headers do not cause mismatches."""
        legacy = _result(files=(GeneratedFile("a.py", "# generated 2024-01-01 10:00:00\nx = 1\n"),))
        candidate = _result(
            files=(GeneratedFile("a.py", "# generated 2024-06-30T23:59:59Z\nx = 1\n"),)
        )

        assert comparator.compare(legacy, candidate).overall_match is True

    def test_timestamps_compared_when_configured(self) -> None:
        """ignore_timestamp_differences=False compares them."""
        comparator = OutputComparator(ignore_timestamp_differences=False)
        legacy = _result(files=(GeneratedFile("a.py", "# 2024-01-01 10:00:00\n"),))
        candidate = _result(files=(GeneratedFile("a.py", "# 2024-01-02 10:00:00\n"),))

        assert comparator.compare(legacy, candidate).overall_match is False

    def test_whitespace_ignored_when_configured(self) -> None:
        """ignore_whitespace_differences collapses whitespace."""
        comparator = OutputComparator(ignore_whitespace_differences=True)
        legacy = _result(files=(GeneratedFile("a.py", "x  =  1\n\n"),))
        candidate = _result(files=(GeneratedFile("a.py", "x = 1"),))

        assert comparator.compare(legacy, candidate).overall_match is True

    def test_plain_text_comparison(self) -> None:
        """Without checksums content is compared directly."""
        comparator = OutputComparator(compare_file_checksums=False)
        comparison = comparator.compare(_result(), _result())

        assert "legacy_checksum" not in comparison.file_comparisons[0]
        assert comparison.file_comparisons[0]["matches"] is True

    def test_content_normalizer(self) -> None:
        """ContentNormalizer replaces timestamps with a placeholder."""
        normalizer = ContentNormalizer(ignore_timestamps=True)

        assert normalizer.normalize("a.py", "at 2024-01-01T00:00:00+00:00") == "at <timestamp>"

    def test_custom_normalizer(self) -> None:
        """A custom normalizer replaces the default."""

        class LowercaseNormalizer:
            def normalize(self, path: str, content: str) -> str:
                return content.lower()

        comparator = OutputComparator(normalizer=LowercaseNormalizer())
        legacy = _result(files=(GeneratedFile("a.sql", "SELECT 1"),))
        candidate = _result(files=(GeneratedFile("a.sql", "select 1"),))

        assert comparator.compare(legacy, candidate).overall_match is True

    def test_large_files_compared_by_size(self) -> None:
        """Files over the limit are compared by size only."""
        comparator = OutputComparator(max_file_size_for_content_comparison=4)
        legacy = _result(files=(GeneratedFile("big.bin", "aaaaaa"),))
        candidate = _result(files=(GeneratedFile("big.bin", "bbbbbb"),))

        comparison = comparator.compare(legacy, candidate)

        assert comparison.overall_match is True
        assert comparison.file_comparisons[0]["comparison_type"] == "size_only"


class TestReport:
    """Tests for generate_report."""

    def test_match_report(self, comparator: OutputComparator) -> None:
        """A matching comparison renders a MATCH status."""
        report = comparator.generate_report(comparator.compare(_result(), _result()))

        assert report.startswith("# Canary Test Comparison Report")
        assert "OVERALL STATUS: MATCH" in report
        assert "- Critical discrepancies: 0" in report
        assert "## Performance Analysis" in report
        assert "- Legacy execution time: 100.0ms" in report
        assert "## Files" in report

    def test_mismatch_report(self, comparator: OutputComparator) -> None:
        """Discrepancies are listed by severity."""
        comparison = comparator.compare(_result(), _result(success=False))

        report = comparator.generate_report(comparison)

        assert "OVERALL STATUS: DISCREPANCIES DETECTED" in report
        assert "- Critical discrepancies: 1" in report
        assert "[success_status]" in report


class TestCompareFilesAtPath:
    """Tests for compare_files_at_path."""

    def test_matching_files(self, comparator: OutputComparator, tmp_path: Path) -> None:
        """Equal files on disk match."""
        legacy = tmp_path / "legacy.py"
        candidate = tmp_path / "candidate.py"
        legacy.write_text("x = 1\n")
        candidate.write_text("x = 1\n")

        comparison = comparator.compare_files_at_path(legacy, candidate)

        assert comparison["matches"] is True
        assert comparison["new_path"] == str(candidate)

    def test_missing_file(self, comparator: OutputComparator, tmp_path: Path) -> None:
        """An unreadable file yields an error entry instead of raising."""
        legacy = tmp_path / "legacy.py"
        legacy.write_text("x = 1\n")

        comparison = comparator.compare_files_at_path(legacy, tmp_path / "missing.py")

        assert comparison["matches"] is False
        assert comparison["error"].startswith("Could not read files:")
