"""Command line helper for Classbook sync and repair tasks."""

from __future__ import annotations

import argparse
import sys

import db
from core import diagnostics, reconciliation
from core.batch_sync import BatchSyncExecutor, SyncError
from core.credentials import CredentialError
from core.google_session import build_credential_manager
from core.logging_config import configure_logging
from core.roster_import import RosterImportError, import_roster
from core.sheets_client import SheetsClient
from settings import load_sync_settings

KINDS = (db.ATTENDANCE, db.EVALUATION)


def command_sign_in(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    _manager, provider = build_credential_manager(settings)
    try:
        provider.sign_in()
    except CredentialError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print("Signed in.")
    return 0


def command_sign_out(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    _manager, provider = build_credential_manager(settings)
    provider.sign_out()
    print("Signed out.")
    return 0


def command_retry(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    manager, _provider = build_credential_manager(settings)
    executor = BatchSyncExecutor(manager, settings)
    try:
        outcome = executor.retry_failed(args.kind, args.teacher)
    except SyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Synced {outcome.synced_count} of {outcome.total_records} {args.kind} records")
    for sheet, message in outcome.failed_sheets.items():
        print(f"  {sheet}: {message}")
    for record_id, reason in outcome.skipped.items():
        print(f"  skipped {record_id}: {reason}")
    return 0 if outcome.success else 2


def command_import(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    manager, _provider = build_credential_manager(settings)
    client = SheetsClient(args.spreadsheet, manager)
    try:
        result = import_roster(
            client,
            args.class_id,
            kind=args.kind,
            sheet_name=args.sheet,
            start_row=args.start_row or settings.roster_start_row,
            end_row=args.end_row or settings.roster_end_row,
            replace=args.replace,
        )
    except (RosterImportError, CredentialError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"Imported {result.imported} students from {result.sheet_name}")
    return 0


def command_audit(args: argparse.Namespace) -> int:
    report = diagnostics.audit()
    for key, value in report.summary.items():
        print(f"{key:>22}: {value}")
    for finding in report.issues:
        print(f"ISSUE   {finding.message}")
    for finding in report.warnings:
        print(f"WARNING {finding.message}")
    for recommendation in report.recommendations:
        print(f"- {recommendation}")
    return 0 if report.healthy else 2


def command_health(args: argparse.Namespace) -> int:
    result = diagnostics.quick_health_check()
    print(result["message"])
    return 0 if result["healthy"] else 2


def command_remap_evaluations(args: argparse.Namespace) -> int:
    if args.dry_run:
        result = diagnostics.dry_run_remap()
        print(f"Would remap: {result['would_remap']}")
        print(f"Would merge: {result['would_merge']}")
        print(f"Would fail : {result['would_fail']}")
        print(f"Notes kept : {result['would_preserve_notes']}")
        for entry in result["would_lose_notes"]:
            print(f"  would lose notes for {entry['student_name']} (chapter {entry['chapter_number']})")
        return 0
    report = reconciliation.remap_orphaned_evaluations()
    print(f"Remapped {report.remapped}, merged {report.merged}, failed {report.failed}")
    for name in report.failed_students:
        print(f"  {name}")
    return 0 if report.failed == 0 else 2


def command_remap_links(args: argparse.Namespace) -> int:
    settings = load_sync_settings()
    report = reconciliation.remap_parent_links(policy=settings.ambiguity_policy)
    print(f"Re-linked {report.remapped_count}, need attention {report.failed_count}")
    for detail in report.details:
        if detail.get("reason"):
            print(f"  {detail['child_name']} (Year {detail['year_group']}): {detail['reason']}")
    return 0 if report.failed_count == 0 else 2


def command_remap_absences(args: argparse.Namespace) -> int:
    report = reconciliation.remap_absence_requests()
    print(f"Remapped {report.remapped_count} absence requests, failed {report.failed_count}")
    for detail in report.details:
        if detail["status"] != "remapped":
            print(f"  {detail['student_name']} ({detail['absence_date']}): {detail['error']}")
    return 0 if report.failed_count == 0 else 2


def command_link_status(args: argparse.Namespace) -> int:
    summary = reconciliation.link_status_summary()
    for status, links in sorted(summary.items()):
        print(f"{status}: {len(links)}")
    return 0


def command_fix_link(args: argparse.Namespace) -> int:
    try:
        reconciliation.manually_fix_link(args.link_id, args.student_id)
    except reconciliation.ReconciliationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print("Link updated.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Classbook sync and repair tool")
    parser.add_argument("-v", "--verbose", action="store_true", help="Also log to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sign-in", help="Authorise Google Sheets access").set_defaults(
        func=command_sign_in
    )
    subparsers.add_parser("sign-out", help="Forget the stored Google token").set_defaults(
        func=command_sign_out
    )

    retry_parser = subparsers.add_parser("retry", help="Re-sync records that failed to sync")
    retry_parser.add_argument("teacher", help="Teacher profile id")
    retry_parser.add_argument("--kind", choices=KINDS, default=db.ATTENDANCE)
    retry_parser.set_defaults(func=command_retry)

    import_parser = subparsers.add_parser("import-roster", help="Import a class roster from a sheet tab")
    import_parser.add_argument("spreadsheet", help="Spreadsheet id")
    import_parser.add_argument("class_id", help="Class id")
    import_parser.add_argument("--kind", choices=KINDS, default=db.ATTENDANCE)
    import_parser.add_argument("--sheet", help="Sheet tab (defaults to the class sheet name)")
    import_parser.add_argument("--start-row", type=int)
    import_parser.add_argument("--end-row", type=int)
    import_parser.add_argument("--replace", action="store_true", help="Replace the class roster")
    import_parser.set_defaults(func=command_import)

    subparsers.add_parser("audit", help="Report evaluation integrity").set_defaults(func=command_audit)
    subparsers.add_parser("health", help="Quick evaluation health check").set_defaults(
        func=command_health
    )

    remap_parser = subparsers.add_parser(
        "remap-evaluations",
        help="Re-attach evaluations orphaned by a roster import",
    )
    remap_parser.add_argument("--dry-run", action="store_true", help="Only report what would change")
    remap_parser.set_defaults(func=command_remap_evaluations)

    subparsers.add_parser("remap-links", help="Repair broken guardian links").set_defaults(
        func=command_remap_links
    )
    subparsers.add_parser(
        "remap-absences", help="Re-attach absence requests orphaned by a roster import"
    ).set_defaults(func=command_remap_absences)
    subparsers.add_parser("link-status", help="Summarise guardian links").set_defaults(
        func=command_link_status
    )

    fix_parser = subparsers.add_parser("fix-link", help="Point a guardian link at a student")
    fix_parser.add_argument("link_id")
    fix_parser.add_argument("student_id")
    fix_parser.set_defaults(func=command_fix_link)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
