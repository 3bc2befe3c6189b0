"""Re-attach guardian links and evaluations after a roster re-import.

Roster imports replace student rows, so anything that referenced the old row
ids (guardian links, lesson evaluations) has to be matched back to the new
rows by name.  Matching is deliberately conservative:

* Strategy A matches the normalised name within the link's stored class.
* Strategy B matches within the link's declared year level, accepting equal
  names and names that contain one another.
* A single candidate is a repair.  Several candidates are ambiguous and are
  flagged for an administrator instead of being trusted (unless the
  ``"first"`` ambiguity policy is configured).
* Nothing found leaves the link broken but visible.

Repairs are never reversed automatically; only :func:`manually_fix_link` may
point a link that still resolves somewhere else.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

import db

logger = logging.getLogger(__name__)

POLICY_REVIEW = "review"
POLICY_FIRST = "first"

STATUS_LINKED = "LINKED"
STATUS_BROKEN = "BROKEN_LINK"
STATUS_PENDING = "PENDING"
STATUS_NEEDS_REVIEW = "NEEDS_REVIEW"

Link = Mapping[str, Any]


class ReconciliationError(Exception):
    """Raised when a link or evaluation cannot be updated as requested."""


def normalize_name(value: Any) -> str:
    """Return ``value`` trimmed, case-folded and with single inner spaces."""

    return " ".join(str(value or "").split()).casefold()


class LinkState(Enum):
    LINKED = "linked"
    REPAIRED = "repaired"
    AMBIGUOUS = "ambiguous"
    BROKEN = "broken"


@dataclass(frozen=True)
class SubjectCandidate:
    id: str
    name: str
    group_id: Optional[str] = None
    year_level: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SubjectCandidate":
        return cls(
            id=str(row["id"]),
            name=str(row.get("student_name") or ""),
            group_id=row.get("class_id"),
            year_level=row.get("year_level"),
        )


@dataclass
class MatchOutcome:
    link_id: str
    state: LinkState
    candidate: Optional[SubjectCandidate] = None
    candidates: List[SubjectCandidate] = field(default_factory=list)
    strategy: Optional[str] = None
    ambiguous: bool = False
    reason: str = ""


@dataclass(frozen=True)
class Notification:
    level: str
    message: str


@dataclass
class GuardianLinks:
    linked: List[Dict[str, Any]] = field(default_factory=list)
    repaired: List[Dict[str, Any]] = field(default_factory=list)
    broken: List[Dict[str, Any]] = field(default_factory=list)
    pending: List[Dict[str, Any]] = field(default_factory=list)
    notifications: List[Notification] = field(default_factory=list)


@dataclass
class LinkRemapReport:
    remapped_count: int = 0
    failed_count: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class EvaluationRemapReport:
    remapped: int = 0
    merged: int = 0
    failed: int = 0
    notes_preserved: int = 0
    failed_students: List[str] = field(default_factory=list)
    details: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AbsenceRemapReport:
    remapped_count: int = 0
    failed_count: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _names_overlap(candidate: str, submitted: str) -> bool:
    if not candidate or not submitted:
        return False
    return candidate == submitted or submitted in candidate or candidate in submitted


def _class_matches(link: Link, submitted: str) -> List[SubjectCandidate]:
    class_id = link.get("class_id")
    if not class_id:
        return []
    return [
        SubjectCandidate.from_row(row)
        for row in db.fetch_roster(db.ATTENDANCE, class_id)
        if normalize_name(row.get("student_name")) == submitted
    ]


def _year_matches(link: Link, submitted: str) -> List[SubjectCandidate]:
    year_group = str(link.get("year_group") or "").strip()
    if not year_group:
        return []
    return [
        SubjectCandidate.from_row(row)
        for row in db.fetch_roster(db.ATTENDANCE)
        if str(row.get("year_level") or "").strip() == year_group
        and _names_overlap(normalize_name(row.get("student_name")), submitted)
    ]


def _pick(
    link_id: str,
    candidates: List[SubjectCandidate],
    strategy: str,
    policy: str,
) -> Optional[MatchOutcome]:
    if not candidates:
        return None
    if len(candidates) == 1:
        return MatchOutcome(
            link_id, LinkState.REPAIRED, candidates[0], candidates, strategy=strategy
        )
    reason = f"{len(candidates)} students match by {strategy}"
    if policy == POLICY_FIRST:
        return MatchOutcome(
            link_id,
            LinkState.REPAIRED,
            candidates[0],
            candidates,
            strategy=strategy,
            ambiguous=True,
            reason=reason,
        )
    return MatchOutcome(
        link_id, LinkState.AMBIGUOUS, None, candidates, strategy=strategy, reason=reason
    )


def resolve_or_repair(link: Link, *, policy: str = POLICY_REVIEW) -> MatchOutcome:
    """Work out how ``link`` should be treated without writing anything."""

    link_id = str(link["id"])
    current = db.fetch_student(link.get("student_id"))
    if current is not None:
        return MatchOutcome(link_id, LinkState.LINKED, SubjectCandidate.from_row(current))

    submitted = normalize_name(link.get("child_name_submitted"))
    if not submitted:
        return MatchOutcome(link_id, LinkState.BROKEN, reason="link has no child name")

    outcome = _pick(link_id, _class_matches(link, submitted), "class", policy)
    if outcome is None:
        outcome = _pick(link_id, _year_matches(link, submitted), "year level", policy)
    if outcome is None:
        return MatchOutcome(link_id, LinkState.BROKEN, reason="no matching student")
    return outcome


def commit_repair(link: Link, candidate_id: str) -> None:
    """Point an unresolved ``link`` at ``candidate_id``."""

    link_id = str(link["id"])
    stored = db.fetch_parent_link(link_id)
    if stored is None:
        raise ReconciliationError(f"Guardian link {link_id} not found")
    if db.fetch_student(candidate_id) is None:
        raise ReconciliationError(f"Student {candidate_id} not found")
    current_id = stored.get("student_id")
    if current_id == candidate_id:
        return
    if db.fetch_student(current_id) is not None:
        raise ReconciliationError(
            f"Guardian link {link_id} already resolves to student {current_id}"
        )
    db.update_link_student(link_id, candidate_id)
    logger.info("Guardian link %s re-linked to student %s", link_id, candidate_id)


def _apply(outcome: MatchOutcome, link: Link) -> bool:
    """Persist a repair or a review flag; return ``True`` when re-linked."""

    if outcome.state is LinkState.REPAIRED and outcome.candidate is not None:
        commit_repair(link, outcome.candidate.id)
        if outcome.ambiguous:
            db.flag_link_for_review(outcome.link_id, outcome.reason)
            logger.warning(
                "Guardian link %s re-linked to the first of several matches: %s",
                outcome.link_id,
                outcome.reason,
            )
        return True
    if outcome.state is LinkState.AMBIGUOUS:
        db.flag_link_for_review(outcome.link_id, outcome.reason)
        logger.warning("Guardian link %s needs review: %s", outcome.link_id, outcome.reason)
    elif outcome.state is LinkState.BROKEN:
        logger.warning(
            "Could not find matching student for %s (Year %s)",
            link.get("child_name_submitted"),
            link.get("year_group"),
        )
    return False


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def load_guardian_links(parent_id: str, *, policy: str = POLICY_REVIEW) -> GuardianLinks:
    """Load a guardian's links, repairing the ones a re-import broke."""

    result = GuardianLinks()
    for link in db.fetch_parent_links(parent_id, verified=True):
        outcome = resolve_or_repair(link, policy=policy)
        if outcome.state is LinkState.LINKED:
            result.linked.append({**link, "student": outcome.candidate})
            continue
        try:
            relinked = _apply(outcome, link)
        except ReconciliationError as exc:
            result.broken.append({**link, "reason": str(exc)})
            continue
        if relinked:
            entry = {**link, "student": outcome.candidate, "student_id": outcome.candidate.id}
            result.repaired.append(entry)
            result.linked.append(entry)
            result.notifications.append(
                Notification("success", f"Automatically re-linked {link.get('child_name_submitted')}")
            )
        else:
            result.broken.append(
                {
                    **link,
                    "reason": outcome.reason,
                    "needs_review": outcome.state is LinkState.AMBIGUOUS,
                }
            )

    if result.broken:
        count = len(result.broken)
        noun = "children" if count > 1 else "child"
        result.notifications.append(
            Notification(
                "error",
                f"{count} {noun} could not be found. Please contact an administrator.",
            )
        )
    result.pending = db.fetch_parent_links(parent_id, verified=False)
    return result


def remap_parent_links(*, policy: str = POLICY_REVIEW) -> LinkRemapReport:
    """Try to repair every verified link that no longer resolves."""

    report = LinkRemapReport()
    for link in db.fetch_parent_links(verified=True):
        outcome = resolve_or_repair(link, policy=policy)
        if outcome.state is LinkState.LINKED:
            continue
        detail: Dict[str, Any] = {
            "link_id": outcome.link_id,
            "child_name": link.get("child_name_submitted"),
            "year_group": link.get("year_group"),
            "state": outcome.state.value,
        }
        try:
            relinked = _apply(outcome, link)
        except ReconciliationError as exc:
            relinked = False
            detail["reason"] = str(exc)
        if relinked:
            report.remapped_count += 1
            detail["student_id"] = outcome.candidate.id if outcome.candidate else None
        else:
            report.failed_count += 1
            detail.setdefault("reason", outcome.reason)
        report.details.append(detail)

    logger.info(
        "Guardian link remap finished: %d remapped, %d need attention",
        report.remapped_count,
        report.failed_count,
    )
    return report


def manually_fix_link(link_id: str, student_id: str) -> None:
    """Administrator override: point ``link_id`` at ``student_id``."""

    if db.fetch_parent_link(link_id) is None:
        raise ReconciliationError(f"Guardian link {link_id} not found")
    if db.fetch_student(student_id) is None:
        raise ReconciliationError(f"Student {student_id} not found")
    db.update_link_student(link_id, student_id)
    logger.info("Guardian link %s manually linked to student %s", link_id, student_id)


def link_status(link: Link) -> str:
    if not link.get("verified"):
        return STATUS_PENDING
    if link.get("needs_review"):
        return STATUS_NEEDS_REVIEW
    if db.fetch_student(link.get("student_id")) is not None:
        return STATUS_LINKED
    return STATUS_BROKEN


def link_status_summary(links: Optional[Iterable[Link]] = None) -> Dict[str, List[Dict[str, Any]]]:
    summary: Dict[str, List[Dict[str, Any]]] = {}
    for link in db.fetch_parent_links() if links is None else links:
        summary.setdefault(link_status(link), []).append(dict(link))
    for status, grouped in summary.items():
        logger.debug("%s: %d", status, len(grouped))
    return summary


def broken_links() -> List[Dict[str, Any]]:
    return link_status_summary().get(STATUS_BROKEN, [])


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


def evaluation_key(name: Any, class_id: Any) -> str:
    return f"{normalize_name(name)}|{class_id or ''}"


def _eval_roster_index() -> Dict[str, List[Dict[str, Any]]]:
    index: Dict[str, List[Dict[str, Any]]] = {}
    for row in db.fetch_roster(db.EVALUATION):
        index.setdefault(evaluation_key(row.get("student_name"), row.get("class_id")), []).append(row)
    return index


def _plan_entry(orphan: Mapping[str, Any], index: Mapping[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "evaluation_id": orphan["id"],
        "student_name": orphan.get("student_name"),
        "stored_class_id": orphan.get("stored_class_id"),
        "chapter_number": orphan.get("chapter_number"),
        "category": orphan.get("category"),
        "evaluation_date": orphan.get("evaluation_date"),
        "has_notes": bool((orphan.get("teacher_notes") or "").strip()),
        "target_id": None,
        "action": "fail",
        "reason": "",
    }
    if not normalize_name(orphan.get("student_name")) or not orphan.get("stored_class_id"):
        entry["reason"] = "missing stored student name or class"
        return entry
    matches = index.get(evaluation_key(orphan.get("student_name"), orphan.get("stored_class_id")), [])
    if not matches:
        entry["reason"] = "no matching student in class"
    elif len(matches) > 1:
        entry["reason"] = f"{len(matches)} students share this name in the class"
    else:
        target = matches[0]
        entry["target_id"] = target["id"]
        entry["target_class_id"] = target.get("class_id")
        existing = db.find_evaluation(
            target["id"],
            orphan.get("chapter_number"),
            orphan.get("category"),
            evaluation_date=orphan.get("evaluation_date"),
            exclude_id=orphan["id"],
        )
        if existing is not None:
            entry["action"] = "merge"
            entry["existing_id"] = existing["id"]
        else:
            entry["action"] = "remap"
    return entry


def plan_evaluation_remap(
    orphans: Optional[List[Dict[str, Any]]] = None,
) -> List[Dict[str, Any]]:
    """Return one plan entry per orphaned evaluation without writing."""

    orphans = db.fetch_evaluations(orphaned_only=True) if orphans is None else orphans
    index = _eval_roster_index()
    return [_plan_entry(orphan, index) for orphan in orphans]


def _merged_values(orphan: Mapping[str, Any], existing: Mapping[str, Any]) -> Dict[str, Any]:
    orphan_notes = orphan.get("teacher_notes")
    notes = orphan_notes if (orphan_notes or "").strip() else existing.get("teacher_notes")
    orphan_rating = orphan.get("rating")
    rating = orphan_rating if orphan_rating not in (None, "") else existing.get("rating")
    return {"rating": rating, "teacher_notes": notes}


def remap_orphaned_evaluations() -> EvaluationRemapReport:
    """Re-attach evaluations whose roster row was deleted.

    When the matched student already holds an evaluation for the same chapter
    and category the two are merged: non-empty orphan notes and a set orphan
    rating win, and the orphan row is deleted.
    """

    index = _eval_roster_index()
    report = EvaluationRemapReport()
    for orphan in db.fetch_evaluations(orphaned_only=True):
        # Planned one at a time so earlier re-attachments are seen as merges.
        entry = _plan_entry(orphan, index)
        action = entry["action"]
        if action == "remap":
            db.reattach_evaluation(orphan["id"], entry["target_id"], entry.get("target_class_id"))
            report.remapped += 1
        elif action == "merge":
            existing = db.fetch_record(db.EVALUATION, entry["existing_id"]) or {}
            db.merge_evaluation(orphan["id"], entry["existing_id"], **_merged_values(orphan, existing))
            report.merged += 1
        else:
            report.failed += 1
            report.failed_students.append(str(orphan.get("student_name") or orphan["id"]))
            logger.warning(
                "Could not remap evaluation %s for %s: %s",
                orphan["id"],
                orphan.get("student_name"),
                entry["reason"],
            )
        if action in ("remap", "merge") and entry["has_notes"]:
            report.notes_preserved += 1
        report.details.append(entry)

    logger.info(
        "Evaluation remap finished: %d remapped, %d merged, %d failed",
        report.remapped,
        report.merged,
        report.failed,
    )
    return report


# ---------------------------------------------------------------------------
# Absence requests
# ---------------------------------------------------------------------------


def remap_absence_requests() -> AbsenceRemapReport:
    """Re-attach absence requests whose student row was replaced by an import."""

    index: Dict[str, List[Dict[str, Any]]] = {}
    for row in db.fetch_roster(db.ATTENDANCE):
        index.setdefault(evaluation_key(row.get("student_name"), row.get("class_id")), []).append(row)

    report = AbsenceRemapReport()
    for request in db.fetch_orphaned_absence_requests():
        detail: Dict[str, Any] = {
            "request_id": request["id"],
            "student_name": request.get("student_name"),
            "absence_date": request.get("absence_date"),
            "class_id": request.get("class_id"),
        }
        matches = index.get(evaluation_key(request.get("student_name"), request.get("class_id")), [])
        if len(matches) == 1:
            db.reattach_absence_request(request["id"], matches[0]["id"])
            detail.update(status="remapped", new_student_id=matches[0]["id"])
            report.remapped_count += 1
            logger.info(
                "Remapped absence request for %s (%s)", request.get("student_name"), request.get("absence_date")
            )
        else:
            detail.update(
                status="no_match" if not matches else "ambiguous",
                error="Student not found in new dataset"
                if not matches
                else f"{len(matches)} students share this name in the class",
            )
            report.failed_count += 1
            logger.warning(
                "Could not remap absence request %s for %s: %s",
                request["id"],
                request.get("student_name"),
                detail["error"],
            )
        report.details.append(detail)

    logger.info(
        "Absence request remap finished: %d remapped, %d failed",
        report.remapped_count,
        report.failed_count,
    )
    return report


__all__ = [
    "AbsenceRemapReport",
    "EvaluationRemapReport",
    "GuardianLinks",
    "LinkRemapReport",
    "LinkState",
    "MatchOutcome",
    "Notification",
    "POLICY_FIRST",
    "POLICY_REVIEW",
    "ReconciliationError",
    "STATUS_BROKEN",
    "STATUS_LINKED",
    "STATUS_NEEDS_REVIEW",
    "STATUS_PENDING",
    "SubjectCandidate",
    "broken_links",
    "commit_repair",
    "evaluation_key",
    "link_status",
    "link_status_summary",
    "load_guardian_links",
    "manually_fix_link",
    "normalize_name",
    "plan_evaluation_remap",
    "remap_absence_requests",
    "remap_orphaned_evaluations",
    "remap_parent_links",
    "resolve_or_repair",
]
