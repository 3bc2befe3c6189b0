"""Read-only audit of lesson evaluations before and after roster imports."""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import db
from core.reconciliation import (
    STATUS_BROKEN,
    STATUS_NEEDS_REVIEW,
    evaluation_key,
    link_status_summary,
    normalize_name,
    plan_evaluation_remap,
)
from core.sheet_address import AddressError, DateLike, weeks_elapsed
from settings import load_sync_settings

logger = logging.getLogger(__name__)

STORED_FIELDS = ("student_name", "stored_class_id", "chapter_number", "stored_category")


class Severity(Enum):
    ISSUE = "issue"
    WARNING = "warning"


@dataclass(frozen=True)
class Finding:
    severity: Severity
    code: str
    message: str
    count: int = 0


@dataclass
class AuditReport:
    summary: Dict[str, int] = field(default_factory=dict)
    issues: List[Finding] = field(default_factory=list)
    warnings: List[Finding] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    missing_fields: Dict[str, int] = field(default_factory=dict)
    unmatched_students: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def add(self, severity: Severity, code: str, message: str, count: int = 0) -> None:
        finding = Finding(severity, code, message, count)
        if severity is Severity.ISSUE:
            self.issues.append(finding)
        else:
            self.warnings.append(finding)


def _has_notes(evaluation: Mapping[str, Any]) -> bool:
    return bool((evaluation.get("teacher_notes") or "").strip())


def _field_missing(evaluation: Mapping[str, Any], name: str) -> bool:
    value = evaluation.get(name)
    if name == "chapter_number":
        # Dated evaluations legitimately have no chapter.
        return value is None and not evaluation.get("evaluation_date")
    if isinstance(value, str):
        return not value.strip()
    return value is None


def _period(evaluation: Mapping[str, Any], origin: DateLike) -> Tuple[str, Any]:
    """Return the sheet block an evaluation is written to."""

    chapter = evaluation.get("chapter_number")
    if chapter is not None:
        return ("chapter", chapter)
    evaluation_date = evaluation.get("evaluation_date")
    try:
        return ("week", weeks_elapsed(origin, evaluation_date))
    except AddressError:
        return ("date", evaluation_date)


def audit(origin_date: Optional[DateLike] = None) -> AuditReport:
    """Inspect stored evaluations and describe what a remap would face.

    ``origin_date`` places dated evaluations in their week block; it defaults
    to the configured term origin. Guardian links that are broken or awaiting
    review are reported as warnings.
    """

    if origin_date is None:
        origin_date = load_sync_settings().layout().origin_date
    evaluations = db.fetch_evaluations()
    orphaned = db.fetch_evaluations(orphaned_only=True)
    orphaned_ids = {row["id"] for row in orphaned}
    linked = [row for row in evaluations if row["id"] not in orphaned_ids]

    report = AuditReport()
    orphaned_with_notes = [row for row in orphaned if _has_notes(row)]
    report.summary = {
        "total": len(evaluations),
        "linked": len(linked),
        "orphaned": len(orphaned),
        "with_notes": sum(1 for row in evaluations if _has_notes(row)),
        "orphaned_with_notes": len(orphaned_with_notes),
    }

    if orphaned_with_notes:
        report.add(
            Severity.ISSUE,
            "orphaned-notes",
            f"{len(orphaned_with_notes)} orphaned evaluations have teacher notes that must be preserved",
            len(orphaned_with_notes),
        )

    # Stored copies on linked evaluations are what a later remap relies on.
    for name in STORED_FIELDS:
        count = sum(1 for row in linked if _field_missing(row, name))
        report.missing_fields[name] = count
        if count:
            report.add(
                Severity.ISSUE,
                f"missing-{name}",
                f"{count} linked evaluations missing {name}",
                count,
            )

    remappable = 0
    not_remappable = 0
    for row in orphaned:
        if normalize_name(row.get("student_name")) and row.get("stored_class_id"):
            remappable += 1
            continue
        not_remappable += 1
        if _has_notes(row):
            report.add(
                Severity.ISSUE,
                "unmappable-notes",
                f"Evaluation {row['id']} has notes but is missing student_name or stored_class_id",
                1,
            )
    report.summary["remappable"] = remappable
    report.summary["not_remappable"] = not_remappable
    if not_remappable:
        report.add(
            Severity.ISSUE,
            "not-remappable",
            f"{not_remappable} orphaned evaluations cannot be remapped due to missing data",
            not_remappable,
        )

    current_keys = {
        evaluation_key(row.get("student_name"), row.get("class_id"))
        for row in db.fetch_roster(db.EVALUATION)
    }
    orphan_students: Dict[str, Dict[str, Any]] = {}
    for row in orphaned:
        if not normalize_name(row.get("student_name")) or not row.get("stored_class_id"):
            continue
        key = evaluation_key(row.get("student_name"), row.get("stored_class_id"))
        info = orphan_students.setdefault(
            key,
            {
                "name": row.get("student_name"),
                "class_id": row.get("stored_class_id"),
                "count": 0,
                "has_notes": False,
            },
        )
        info["count"] += 1
        info["has_notes"] = info["has_notes"] or _has_notes(row)
    report.unmatched_students = [
        info for key, info in orphan_students.items() if key not in current_keys
    ]
    unmatched_with_notes = [info for info in report.unmatched_students if info["has_notes"]]
    if report.unmatched_students:
        report.add(
            Severity.WARNING,
            "unmatched-students",
            f"{len(report.unmatched_students)} orphaned students will fail to remap (not in the current roster)",
            len(report.unmatched_students),
        )
    if unmatched_with_notes:
        report.add(
            Severity.ISSUE,
            "unmatched-notes",
            f"{len(unmatched_with_notes)} students with teacher notes are not in the current roster",
            len(unmatched_with_notes),
        )

    keys = Counter(
        (row.get("eval_student_id"), _period(row, origin_date), row.get("category")) for row in linked
    )
    duplicates = sum(count - 1 for count in keys.values() if count > 1)
    report.summary["duplicates"] = duplicates
    if duplicates:
        report.add(
            Severity.ISSUE,
            "duplicates",
            f"{duplicates} evaluations share a student, category and sheet block with another",
            duplicates,
        )

    links = link_status_summary()
    broken = len(links.get(STATUS_BROKEN, []))
    needs_review = len(links.get(STATUS_NEEDS_REVIEW, []))
    report.summary["broken_links"] = broken
    report.summary["links_needing_review"] = needs_review
    if broken:
        report.add(
            Severity.WARNING,
            "broken-links",
            f"{broken} guardian links point at students that no longer exist",
            broken,
        )
    if needs_review:
        report.add(
            Severity.WARNING,
            "links-need-review",
            f"{needs_review} guardian links are waiting for an administrator to review",
            needs_review,
        )

    if report.missing_fields.get("student_name") or report.missing_fields.get("stored_class_id"):
        report.recommendations.append(
            "Populate the missing stored fields before the next roster import"
        )
    if orphaned_with_notes:
        report.recommendations.append(
            f"{len(orphaned_with_notes)} orphaned evaluations have teacher notes; run the evaluation remap"
        )
    if unmatched_with_notes:
        report.recommendations.append(
            f"{len(unmatched_with_notes)} students with notes are missing from the roster; "
            "add them to the sheet and re-import"
        )
    elif report.unmatched_students:
        report.recommendations.append(
            f"{len(report.unmatched_students)} students will be dropped (no notes to preserve)"
        )
    if orphaned and remappable == len(orphaned):
        report.recommendations.append("All orphaned evaluations are remappable")
    if broken or needs_review:
        report.recommendations.append("Run the guardian link remap and review flagged links")
    if not report.recommendations:
        report.recommendations.append("No problems found; ready for roster import")

    logger.info(
        "Evaluation audit: %d total, %d orphaned, %d issues, %d warnings",
        report.summary["total"],
        report.summary["orphaned"],
        len(report.issues),
        len(report.warnings),
    )
    return report


def quick_health_check() -> Dict[str, Any]:
    """Count orphaned evaluations that still carry teacher notes."""

    orphaned_with_notes = sum(
        1
        for row in db.fetch_evaluations(orphaned_only=True)
        if _has_notes(row) and normalize_name(row.get("student_name"))
    )
    if orphaned_with_notes:
        message = f"{orphaned_with_notes} orphaned evaluations with notes need attention"
    else:
        message = "All evaluations properly linked"
    return {
        "healthy": orphaned_with_notes == 0,
        "orphaned_with_notes": orphaned_with_notes,
        "message": message,
    }


def dry_run_remap() -> Dict[str, Any]:
    """Simulate :func:`core.reconciliation.remap_orphaned_evaluations`."""

    plan = plan_evaluation_remap()
    result: Dict[str, Any] = {
        "would_remap": 0,
        "would_merge": 0,
        "would_fail": 0,
        "would_preserve_notes": 0,
        "would_lose_notes": [],
    }
    for entry in plan:
        if entry["action"] == "remap":
            result["would_remap"] += 1
        elif entry["action"] == "merge":
            result["would_merge"] += 1
        else:
            result["would_fail"] += 1
            if entry["has_notes"]:
                result["would_lose_notes"].append(entry)
            continue
        if entry["has_notes"]:
            result["would_preserve_notes"] += 1
    return result


__all__ = [
    "AuditReport",
    "Finding",
    "Severity",
    "audit",
    "dry_run_remap",
    "quick_health_check",
]
