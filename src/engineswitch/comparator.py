"""
Structural comparison of legacy and candidate execution results.

The comparator is used by canary runs: both engines execute the same
request, the legacy result is returned, and the comparison is attached to
the result metadata for observability. It never raises for bad input;
malformed results produce a ``comparison_error`` discrepancy instead.

Severity rules:
    critical: success status differs, a file exists on one side only, file
        content differs after normalization, comparison could not run
    warning: model count differs (file sets equal), a model present on both
        sides differs in structure, the candidate is significantly slower
    info: execution time differs beyond tolerance without being a regression

Example:
    >>> comparator = OutputComparator()
    >>> result = comparator.compare(legacy_result, candidate_result)
    >>> result.overall_match
    True
    >>> print(comparator.generate_report(result))
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Protocol

from engineswitch.exceptions import ConfigurationError
from engineswitch.models import (
    ComparisonResult,
    Discrepancy,
    DiscrepancySeverity,
    ExecutionResult,
    GeneratedFile,
)

logger = logging.getLogger(__name__)

_TIMESTAMP_PATTERN = re.compile(
    r"\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2}| UTC)?"
)
_WHITESPACE_PATTERN = re.compile(r"\s+")


@dataclass(frozen=True)
class ComparatorConfig:
    """
    Tolerances for output comparison.

    Attributes:
        performance_tolerance_ms: Time difference considered noise.
        performance_regression_threshold: Candidate/legacy time ratio at which
            a slowdown beyond the tolerance becomes a warning.
        compare_file_checksums: Compare SHA-256 digests rather than raw text.
        ignore_whitespace_differences: Collapse whitespace before comparing.
        ignore_timestamp_differences: Mask timestamps before comparing.
        acceptable_model_count_difference: Model count delta that is not reported.
        acceptable_file_count_difference: Extra or missing files that are not
            reported. Only applies when every shared file matches.
        max_file_size_for_content_comparison: Files larger than this (in
            characters) are compared by size only.
    """

    performance_tolerance_ms: float = 50.0
    performance_regression_threshold: float = 1.5
    compare_file_checksums: bool = True
    ignore_whitespace_differences: bool = False
    ignore_timestamp_differences: bool = True
    acceptable_model_count_difference: int = 0
    acceptable_file_count_difference: int = 0
    max_file_size_for_content_comparison: int = 10 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.performance_tolerance_ms < 0:
            raise ConfigurationError(
                "performance_tolerance_ms must be >= 0",
                field="performance_tolerance_ms",
                value=self.performance_tolerance_ms,
            )
        if self.performance_regression_threshold < 1:
            raise ConfigurationError(
                "performance_regression_threshold must be >= 1",
                field="performance_regression_threshold",
                value=self.performance_regression_threshold,
            )
        for name in ("acceptable_model_count_difference", "acceptable_file_count_difference"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0", field=name, value=getattr(self, name))
        if self.max_file_size_for_content_comparison < 1:
            raise ConfigurationError(
                "max_file_size_for_content_comparison must be >= 1",
                field="max_file_size_for_content_comparison",
                value=self.max_file_size_for_content_comparison,
            )


class Normalizer(Protocol):
    """Removes noise from generated file content before comparison."""

    def normalize(self, path: str, content: str) -> str: ...


class ContentNormalizer:
    """
    Default normalizer: masks timestamps and optionally collapses whitespace.

    Generated files usually carry a "generated at" header; masking it keeps
    two otherwise identical runs from being reported as different.
    """

    def __init__(self, *, ignore_timestamps: bool = True, ignore_whitespace: bool = False) -> None:
        self.ignore_timestamps = ignore_timestamps
        self.ignore_whitespace = ignore_whitespace

    def normalize(self, path: str, content: str) -> str:
        if self.ignore_timestamps:
            content = _TIMESTAMP_PATTERN.sub("<timestamp>", content)
        if self.ignore_whitespace:
            content = _WHITESPACE_PATTERN.sub(" ", content).strip()
        return content


class MalformedResultError(ValueError):
    """An engine result could not be interpreted."""


def _coerce_result(value: Any, label: str) -> ExecutionResult:
    if isinstance(value, ExecutionResult):
        return value
    if isinstance(value, Mapping):
        if "success" not in value:
            raise MalformedResultError(f"{label} result has no 'success' field")
        return ExecutionResult.from_dict(value)
    raise MalformedResultError(f"{label} result has unsupported type {type(value).__name__}")


def _model_key(model: Any, index: int) -> str:
    if isinstance(model, Mapping):
        for key in ("table_name", "name", "class_name"):
            if model.get(key):
                return str(model[key])
    return f"#{index}"


def _checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class OutputComparator:
    """
    Compares two execution results and classifies the differences.

    Attributes:
        config: Comparison tolerances.
        normalizer: Collaborator that strips noise from file content.
    """

    def __init__(
        self,
        config: ComparatorConfig | None = None,
        *,
        normalizer: Normalizer | None = None,
        **overrides: Any,
    ) -> None:
        """
        Initialize the comparator.

        Args:
            config: Comparison tolerances (defaults to ComparatorConfig()).
            normalizer: Content normalizer. Defaults to a ContentNormalizer
                built from the config's ignore flags.
            **overrides: ComparatorConfig fields applied on top of ``config``.
        """
        base = config or ComparatorConfig()
        if overrides:
            try:
                base = replace(base, **overrides)
            except TypeError as e:
                raise ConfigurationError(f"Invalid comparator configuration: {e}") from e
        self.config = base
        self.normalizer = normalizer or ContentNormalizer(
            ignore_timestamps=base.ignore_timestamp_differences,
            ignore_whitespace=base.ignore_whitespace_differences,
        )

    def compare(
        self,
        legacy: ExecutionResult | Mapping[str, Any],
        candidate: ExecutionResult | Mapping[str, Any],
    ) -> ComparisonResult:
        """
        Compare a legacy and a candidate result.

        Args:
            legacy: Result from the legacy engine.
            candidate: Result from the candidate engine.

        Returns:
            ComparisonResult; ``overall_match`` is False only when a critical
            discrepancy was found.
        """
        try:
            legacy_result = _coerce_result(legacy, "legacy")
            candidate_result = _coerce_result(candidate, "candidate")
            return self._compare(legacy_result, candidate_result)
        except (MalformedResultError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Output comparison failed: %s", e)
            return ComparisonResult(
                overall_match=False,
                critical_discrepancies=(
                    Discrepancy(
                        type="comparison_error",
                        description=f"Comparison failed: {e}",
                        severity=DiscrepancySeverity.CRITICAL,
                    ),
                ),
            )

    def _compare(self, legacy: ExecutionResult, candidate: ExecutionResult) -> ComparisonResult:
        found: list[Discrepancy] = []

        if legacy.success != candidate.success:
            found.append(
                Discrepancy(
                    type="success_status",
                    description=(
                        f"Success status differs: legacy={legacy.success}, new={candidate.success}"
                    ),
                    severity=DiscrepancySeverity.CRITICAL,
                )
            )

        file_comparisons, file_discrepancies, file_sets_equal = self._compare_files(
            legacy.generated_files, candidate.generated_files
        )
        found.extend(file_discrepancies)

        model_comparisons, model_discrepancies = self._compare_models(
            legacy.generated_models, candidate.generated_models, file_sets_equal
        )
        found.extend(model_discrepancies)

        performance, performance_discrepancies = self._analyze_performance(
            legacy.execution_time_seconds, candidate.execution_time_seconds
        )
        found.extend(performance_discrepancies)

        critical = tuple(d for d in found if d.severity == DiscrepancySeverity.CRITICAL)
        result = ComparisonResult(
            overall_match=not critical,
            critical_discrepancies=critical,
            warning_discrepancies=tuple(
                d for d in found if d.severity == DiscrepancySeverity.WARNING
            ),
            info_discrepancies=tuple(d for d in found if d.severity == DiscrepancySeverity.INFO),
            performance_analysis=performance,
            file_comparisons=tuple(file_comparisons),
            model_comparisons=tuple(model_comparisons),
        )
        logger.debug(
            "Compared outputs: match=%s critical=%d warning=%d",
            result.overall_match,
            len(result.critical_discrepancies),
            len(result.warning_discrepancies),
        )
        return result

    # =========================================================================
    # Files
    # =========================================================================

    def _compare_files(
        self,
        legacy_files: tuple[GeneratedFile, ...],
        candidate_files: tuple[GeneratedFile, ...],
    ) -> tuple[list[dict[str, Any]], list[Discrepancy], bool]:
        legacy_by_path = {f.path: f for f in legacy_files}
        candidate_by_path = {f.path: f for f in candidate_files}
        only_legacy = sorted(set(legacy_by_path) - set(candidate_by_path))
        only_candidate = sorted(set(candidate_by_path) - set(legacy_by_path))

        comparisons: list[dict[str, Any]] = []
        discrepancies: list[Discrepancy] = []
        for path in sorted(set(legacy_by_path) & set(candidate_by_path)):
            comparison = self._compare_content(
                path, legacy_by_path[path].content, candidate_by_path[path].content
            )
            comparisons.append(comparison)
            if not comparison["matches"]:
                discrepancies.append(
                    Discrepancy(
                        type="file_content",
                        description=f"File content differs: {path}",
                        severity=DiscrepancySeverity.CRITICAL,
                    )
                )

        unmatched = len(only_legacy) + len(only_candidate)
        tolerated = not discrepancies and unmatched <= self.config.acceptable_file_count_difference
        if unmatched and not tolerated:
            for path in only_legacy:
                discrepancies.append(
                    Discrepancy(
                        type="file_missing",
                        description=f"File only generated by legacy engine: {path}",
                        severity=DiscrepancySeverity.CRITICAL,
                    )
                )
            for path in only_candidate:
                discrepancies.append(
                    Discrepancy(
                        type="file_extra",
                        description=f"File only generated by new engine: {path}",
                        severity=DiscrepancySeverity.CRITICAL,
                    )
                )

        return comparisons, discrepancies, not only_legacy and not only_candidate

    def _compare_content(self, path: str, legacy_content: str, candidate_content: str) -> dict[str, Any]:
        limit = self.config.max_file_size_for_content_comparison
        if len(legacy_content) > limit or len(candidate_content) > limit:
            return {
                "path": path,
                "matches": len(legacy_content) == len(candidate_content),
                "comparison_type": "size_only",
                "legacy_size": len(legacy_content),
                "new_size": len(candidate_content),
            }

        legacy_normalized = self.normalizer.normalize(path, legacy_content)
        candidate_normalized = self.normalizer.normalize(path, candidate_content)
        comparison: dict[str, Any] = {
            "path": path,
            "comparison_type": "content",
            "legacy_size": len(legacy_content),
            "new_size": len(candidate_content),
        }
        if self.config.compare_file_checksums:
            legacy_digest = _checksum(legacy_normalized)
            candidate_digest = _checksum(candidate_normalized)
            comparison["legacy_checksum"] = legacy_digest
            comparison["new_checksum"] = candidate_digest
            comparison["matches"] = legacy_digest == candidate_digest
        else:
            comparison["matches"] = legacy_normalized == candidate_normalized
        return comparison

    def compare_files_at_path(self, legacy_path: str | Path, candidate_path: str | Path) -> dict[str, Any]:
        """
        Compare two files on disk with the configured normalization.

        Returns:
            The per-file comparison dict, or ``{"matches": False, "error": ...}``
            when either file cannot be read.
        """
        try:
            legacy_content = Path(legacy_path).read_text(encoding="utf-8")
            candidate_content = Path(candidate_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read files for comparison: %s", e)
            return {"matches": False, "error": f"Could not read files: {e}"}
        comparison = self._compare_content(str(legacy_path), legacy_content, candidate_content)
        comparison["new_path"] = str(candidate_path)
        return comparison

    # =========================================================================
    # Models
    # =========================================================================

    def _compare_models(
        self,
        legacy_models: tuple[Any, ...],
        candidate_models: tuple[Any, ...],
        file_sets_equal: bool,
    ) -> tuple[list[dict[str, Any]], list[Discrepancy]]:
        discrepancies: list[Discrepancy] = []
        count_delta = abs(len(legacy_models) - len(candidate_models))
        if file_sets_equal and count_delta > self.config.acceptable_model_count_difference:
            discrepancies.append(
                Discrepancy(
                    type="model_count",
                    description=(
                        f"Model count differs: legacy={len(legacy_models)}, "
                        f"new={len(candidate_models)}"
                    ),
                    severity=DiscrepancySeverity.WARNING,
                )
            )

        legacy_by_key = {_model_key(m, i): m for i, m in enumerate(legacy_models)}
        candidate_by_key = {_model_key(m, i): m for i, m in enumerate(candidate_models)}
        comparisons: list[dict[str, Any]] = []
        for key in sorted(set(legacy_by_key) & set(candidate_by_key)):
            legacy_model = legacy_by_key[key]
            candidate_model = candidate_by_key[key]
            if isinstance(legacy_model, Mapping) and isinstance(candidate_model, Mapping):
                differing = sorted(
                    field
                    for field in set(legacy_model) | set(candidate_model)
                    if legacy_model.get(field) != candidate_model.get(field)
                )
            else:
                differing = [] if legacy_model == candidate_model else ["value"]
            comparisons.append({"model": key, "matches": not differing, "differences": differing})
            if differing:
                discrepancies.append(
                    Discrepancy(
                        type="model_structure",
                        description=f"Model {key} differs in: {', '.join(differing)}",
                        severity=DiscrepancySeverity.WARNING,
                    )
                )
        return comparisons, discrepancies

    # =========================================================================
    # Performance
    # =========================================================================

    def _analyze_performance(
        self, legacy_seconds: float, candidate_seconds: float
    ) -> tuple[dict[str, Any], list[Discrepancy]]:
        legacy_ms = round(legacy_seconds * 1000, 3)
        new_ms = round(candidate_seconds * 1000, 3)
        delta_ms = round(new_ms - legacy_ms, 3)
        delta_percent = round(delta_ms / legacy_ms * 100, 2) if legacy_ms > 0 else 0.0
        within_tolerance = abs(delta_ms) <= self.config.performance_tolerance_ms
        analysis = {
            "legacy_time_ms": legacy_ms,
            "new_time_ms": new_ms,
            "delta_ms": delta_ms,
            "delta_percent": delta_percent,
            "within_tolerance": within_tolerance,
            "legacy_faster": delta_ms > 0,
            "new_faster": delta_ms < 0,
        }

        if within_tolerance:
            return analysis, []

        ratio = new_ms / legacy_ms if legacy_ms > 0 else float("inf")
        if delta_ms > 0 and ratio >= self.config.performance_regression_threshold:
            return analysis, [
                Discrepancy(
                    type="performance_regression",
                    description=f"New engine is {delta_ms:.0f}ms slower ({delta_percent:+.1f}%)",
                    severity=DiscrepancySeverity.WARNING,
                )
            ]
        return analysis, [
            Discrepancy(
                type="execution_time",
                description=f"Execution time differs by {delta_ms:+.0f}ms",
                severity=DiscrepancySeverity.INFO,
            )
        ]

    # =========================================================================
    # Reporting
    # =========================================================================

    def generate_report(self, result: ComparisonResult) -> str:
        """Render a comparison as a Markdown report."""
        lines = ["# Canary Test Comparison Report", ""]
        status = "MATCH" if result.overall_match else "DISCREPANCIES DETECTED"
        lines.append(f"OVERALL STATUS: {status}")
        lines.append("")
        lines.append("## Summary")
        lines.append(f"- Critical discrepancies: {len(result.critical_discrepancies)}")
        lines.append(f"- Warnings: {len(result.warning_discrepancies)}")
        lines.append(f"- Informational: {len(result.info_discrepancies)}")

        for title, group in (
            ("Critical Discrepancies", result.critical_discrepancies),
            ("Warnings", result.warning_discrepancies),
            ("Informational", result.info_discrepancies),
        ):
            if group:
                lines.append("")
                lines.append(f"## {title}")
                lines.extend(f"- [{d.type}] {d.description}" for d in group)

        performance = result.performance_analysis
        if performance:
            lines.append("")
            lines.append("## Performance Analysis")
            lines.append(f"- Legacy execution time: {float(performance['legacy_time_ms']):.1f}ms")
            lines.append(f"- New execution time: {float(performance['new_time_ms']):.1f}ms")
            lines.append(
                f"- Difference: {float(performance['delta_ms']):+.1f}ms "
                f"({float(performance['delta_percent']):+.1f}%)"
            )
            lines.append(f"- Within tolerance: {'yes' if performance['within_tolerance'] else 'no'}")

        if result.file_comparisons:
            lines.append("")
            lines.append("## Files")
            for comparison in result.file_comparisons:
                mark = "match" if comparison.get("matches") else "DIFFERS"
                lines.append(
                    f"- {comparison.get('path')}: {mark} ({comparison.get('comparison_type')})"
                )

        return "\n".join(lines) + "\n"
