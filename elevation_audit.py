#!/usr/bin/env python3
"""
Elevation Audit - per-application compliance statistics for Admin By Request.

Flow:
 - load authorization settings (setting name -> authorized AD groups)
 - resolve group members (live AD via PowerShell, or cached snapshot)
 - fetch audit/inventory records (live API, or cached JSON)
 - reconcile completions per setting and export CSVs + DOCX summary
"""

import argparse
import csv
import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from docx import Document

from elevation_engine import (ApplicationStatisticsResult, DiagnosticSink, MatchPolicy,
                              ReconciliationReport, ReportingWindow, SettingsRegistry,
                              densify_by_date, run_reconciliation)
from elevation_sources import (DEFAULT_BASE_URL, DEFAULT_LOOKBACK_DAYS, GROUPS_CACHE_FILE,
                               AdminByRequestClient, CachedGroupProvider, CachedRecordSource,
                               LiveAdGroupProvider, LiveRecordSource, extract_list,
                               save_group_snapshot)

# ---------- Config ----------
OUTPUT_ROOT = "Audit_Results"
CACHE_DIR = "cache"
SETTINGS_FILE = "settings.json"
API_KEY_ENV = "ADMINBYREQUEST_API_KEY"
DEFAULT_TOP = 5


# ---------- Logging ----------
def setup_logging(output_dir: str):
    os.makedirs(output_dir, exist_ok=True)
    log_path = os.path.join(output_dir, "audit.log")
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.FileHandler(log_path, encoding="utf-8"), logging.StreamHandler(sys.stdout)],
    )


# ---------- Utilities ----------
def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def export_csv(path: str, header: List[str], rows: List[List[Any]]):
    ensure_dir(os.path.dirname(path) or ".")
    with open(path, "w", newline="", encoding="utf-8") as fh:
        writer = csv.writer(fh)
        writer.writerow(header)
        writer.writerows(rows)


def fmt_ts(ts: Optional[datetime]) -> str:
    return ts.strftime("%Y-%m-%d %H:%M:%S") if ts else "N/A"


# ---------- Settings ----------
def load_settings(path: str, sink: DiagnosticSink) -> SettingsRegistry:
    raw = load_json(path)
    items = extract_list(raw, ("settings", "items", "data"))
    registry = SettingsRegistry.from_config([i for i in items if isinstance(i, dict)], sink)
    logging.info("Loaded %d settings from %s", len(registry), path)
    return registry


# ---------- Table builders ----------
def sorted_results(stats: Dict[str, ApplicationStatisticsResult]) -> List[ApplicationStatisticsResult]:
    return sorted(stats.values(), key=lambda r: (-r.unique_user_count, r.setting_name.lower()))


def build_statistics_table(stats: Dict[str, ApplicationStatisticsResult]) -> Tuple[List[str], List[List]]:
    header = ["No.", "Setting", "Authorized Users", "Unique Users", "Total Completions",
              "Unauthorized Attempts", "First Completion", "Last Completion", "Top Users"]
    rows = []
    for i, r in enumerate(sorted_results(stats), start=1):
        top = ", ".join(f"{u} ({n})" for u, n in r.top_users)
        rows.append([i, r.setting_name, r.authorized_user_count, r.unique_user_count, r.total_completions,
                     r.unauthorized_attempts, fmt_ts(r.first_completion), fmt_ts(r.last_completion), top])
    return header, rows


def build_trend_table(stats: Dict[str, ApplicationStatisticsResult],
                      window: ReportingWindow) -> Tuple[List[str], List[List]]:
    header = ["Setting", "Date", "Completions"]
    rows = []
    for name in sorted(stats, key=str.lower):
        for day, count in densify_by_date(stats[name].completions_by_date, window):
            rows.append([name, day.isoformat(), count])
    return header, rows


def build_completed_users_table(report: ReconciliationReport) -> Tuple[List[str], List[List]]:
    header = ["Setting", "User", "First Completion", "Occurrences", "Source", "Corroborated By Inventory"]
    rows = [[c.setting_name, c.user, fmt_ts(c.timestamp), c.occurrences, c.source, str(c.corroborated)]
            for c in report.classification.completed]
    return header, rows


def build_diagnostics_table(report: ReconciliationReport) -> Tuple[List[str], List[List]]:
    header = ["Level", "Code", "Message"]
    return header, [[d.level.upper(), d.code, d.message] for d in report.diagnostics]


# ---------- Report generation ----------
def generate_report(output_dir: str, report: ReconciliationReport, window: ReportingWindow,
                    mode: str, auditor: str = "N/A") -> str:
    doc = Document()
    doc.add_heading("Elevation Compliance Report", 0)
    doc.add_paragraph(f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    doc.add_paragraph(f"Auditor: {auditor}")
    doc.add_paragraph(f"Data source: {mode}")
    doc.add_paragraph(f"Reporting window: {window.start.isoformat()} to {window.end.isoformat()}")

    results = sorted_results(report.statistics)
    doc.add_heading("Application Statistics", level=2)
    doc.add_paragraph(f"Total settings: {len(results)}")
    table = doc.add_table(rows=1, cols=5)
    for cell, title in zip(table.rows[0].cells, ["Setting", "Authorized", "Unique Users", "Completions", "Unauthorized"]):
        cell.text = title
    for r in results:
        cells = table.add_row().cells
        cells[0].text = r.setting_name
        cells[1].text = str(r.authorized_user_count)
        cells[2].text = str(r.unique_user_count)
        cells[3].text = str(r.total_completions)
        cells[4].text = str(r.unauthorized_attempts)

    unused = [r.setting_name for r in results if r.total_completions == 0]
    doc.add_heading("Settings Without Completions", level=2)
    if unused:
        for name in unused:
            doc.add_paragraph(f"- {name}")
    else:
        doc.add_paragraph("Every setting has at least one completion.")

    cls = report.classification
    doc.add_heading("Data Quality", level=2)
    doc.add_paragraph(f"Records matching no setting: {cls.unmatched_count}")
    doc.add_paragraph(f"Audit records skipped (not finished/approved): {cls.skipped_status}")
    doc.add_paragraph(f"Records outside reporting window: {cls.out_of_window}")
    warnings = [d for d in report.diagnostics if d.level == "warning"]
    if warnings:
        doc.add_paragraph(f"Warnings: {len(warnings)}")
        for d in warnings:
            doc.add_paragraph(f"- [{d.code}] {d.message}")
    else:
        doc.add_paragraph("No warnings raised.")

    out_path = os.path.join(output_dir, "elevation_audit_report.docx")
    doc.save(out_path)
    logging.info("Saved report: %s", out_path)
    return out_path


def write_outputs(output_dir: str, report: ReconciliationReport, window: ReportingWindow):
    h, rows = build_statistics_table(report.statistics)
    export_csv(os.path.join(output_dir, "application_statistics.csv"), h, rows)
    h, rows = build_trend_table(report.statistics, window)
    export_csv(os.path.join(output_dir, "completions_by_date.csv"), h, rows)
    h, rows = build_completed_users_table(report)
    export_csv(os.path.join(output_dir, "completed_users.csv"), h, rows)
    h, rows = build_diagnostics_table(report)
    export_csv(os.path.join(output_dir, "diagnostics.csv"), h, rows)
    logging.info("CSV outputs written to %s", output_dir)


# ---------- Main ----------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Per-application elevation compliance statistics")
    parser.add_argument("--settings", default=SETTINGS_FILE, help="Authorization settings JSON file path")
    parser.add_argument("--mode", choices=("live", "cached"), default="cached", help="Fetch live or use cached data")
    parser.add_argument("--api-key", default=os.environ.get(API_KEY_ENV), help=f"API key (default: ${API_KEY_ENV})")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)
    parser.add_argument("--cache-dir", default=CACHE_DIR)
    parser.add_argument("--days", type=int, default=DEFAULT_LOOKBACK_DAYS, help="Reporting window in days")
    parser.add_argument("--match", choices=MatchPolicy.CHOICES, default=MatchPolicy.EXACT,
                        help="Application-to-setting matching policy")
    parser.add_argument("--no-inventory", action="store_true", help="Ignore inventory evidence")
    parser.add_argument("--top", type=int, default=DEFAULT_TOP, help="Top users per setting")
    parser.add_argument("--workers", type=int, default=1, help="Parallel AD group lookups")
    parser.add_argument("--refresh-cache", action="store_true", help="In live mode, overwrite cached data")
    parser.add_argument("--auditor", default="N/A")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    output_dir = os.path.join(OUTPUT_ROOT, f"Audit_{timestamp}")
    ensure_dir(output_dir)
    setup_logging(output_dir)
    logging.info("Starting elevation audit run (%s mode)", args.mode)

    sink = DiagnosticSink(logging.getLogger("elevation_engine"))
    try:
        registry = load_settings(args.settings, sink)
    except (OSError, ValueError) as e:
        logging.error("Failed to load settings JSON: %s", e)
        return 1

    window = ReportingWindow.last_days(args.days)
    if args.mode == "live":
        if not args.api_key:
            logging.error("Live mode needs an API key (--api-key or $%s)", API_KEY_ENV)
            return 2
        client = AdminByRequestClient(args.api_key, base_url=args.base_url,
                                      start_date=window.start, end_date=window.end)
        source = LiveRecordSource(client, cache_dir=args.cache_dir if args.refresh_cache else None)
        provider = LiveAdGroupProvider()
    else:
        source = CachedRecordSource(args.cache_dir)
        provider = CachedGroupProvider(os.path.join(args.cache_dir, GROUPS_CACHE_FILE))

    audit_records = source.fetch_or_load_audit_records()
    inventory_records = [] if args.no_inventory else source.fetch_or_load_inventory_records()
    logging.info("Audit records: %d, inventory records: %d", len(audit_records), len(inventory_records))

    report = run_reconciliation(registry, provider, audit_records, inventory_records,
                                policy=MatchPolicy(args.match), window=window,
                                use_inventory=not args.no_inventory, top_n=args.top,
                                max_workers=args.workers, sink=sink)

    if args.mode == "live" and args.refresh_cache:
        path = os.path.join(args.cache_dir, GROUPS_CACHE_FILE)
        save_group_snapshot(path, provider.resolved)
        logging.info("Group snapshot updated: %s", path)

    write_outputs(output_dir, report, window)
    report_path = generate_report(output_dir, report, window, args.mode, auditor=args.auditor)

    logging.info("Audit run finished. Outputs: %s", output_dir)
    print(f"[SUCCESS] Audit finished. Results in: {output_dir}")
    print(f"Report: {report_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
