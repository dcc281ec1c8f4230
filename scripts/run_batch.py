#!/usr/bin/env python3
"""
Run a skip-trace batch from the command line and write its report.

Lead ids come from --ids and/or a CSV file (an `id` column, or the first
column). With --import, CSV rows are upserted into `leads` first, which is
handy for local runs against SQLite with SKIPTRACE_MOCK_PROVIDERS=1.

Usage:
    python scripts/run_batch.py --ids L1 L2 L3
    python scripts/run_batch.py --csv leads.csv --import --create-tables
    python scripts/run_batch.py --csv leads.csv --force --out reports/

CSV columns for --import: id, owner_name, address, city, state, zip_code

Requires: DATABASE_URL set (or defaults to sqlite:///local.db).
"""
import sys
import os
import csv
import json
import argparse
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from skiptrace import import_models
from skiptrace.database import get_session, engine, Base
from skiptrace.logging_config import configure_logging
from skiptrace.models.lead import Lead
from skiptrace.pipeline.errors import SkipTraceError
from skiptrace.pipeline.manager import get_run_manager

logger = logging.getLogger('scripts.run_batch')

LEAD_FIELDS = ('owner_name', 'address', 'city', 'state', 'zip_code')


def read_csv(path):
    """Rows as dicts; a header-less file yields {'id': first column}."""
    with open(path, newline='') as f:
        sample = f.read(2048)
        f.seek(0)
        has_header = csv.Sniffer().has_header(sample) if sample.strip() else False
        if has_header:
            return [row for row in csv.DictReader(f) if row.get('id')]
        return [{'id': row[0].strip()} for row in csv.reader(f) if row and row[0].strip()]


def import_leads(rows):
    """Insert or update leads from CSV rows. Returns the number written."""
    session = get_session()
    try:
        written = 0
        for row in rows:
            if not row.get('address'):
                logger.warning("Skipping lead %s: no address", row['id'])
                continue
            lead = session.get(Lead, row['id']) or Lead(id=row['id'])
            for name in LEAD_FIELDS:
                if row.get(name) is not None:
                    setattr(lead, name, row[name].strip())
            session.add(lead)
            written += 1
        session.commit()
        return written
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def main():
    parser = argparse.ArgumentParser(description='Run a skip-trace batch and write its report')
    parser.add_argument('--ids', nargs='*', default=[], help='Lead ids to trace')
    parser.add_argument('--csv', help='CSV file with lead ids (and lead fields for --import)')
    parser.add_argument('--import', dest='do_import', action='store_true', help='Upsert CSV rows into leads first')
    parser.add_argument('--create-tables', action='store_true', help='Create tables directly (local SQLite only)')
    parser.add_argument('--label', default='cli', help='Run source label')
    parser.add_argument('--force', action='store_true', help='Re-trace leads that already have a result')
    parser.add_argument('--out', default='reports', help='Directory for the report JSON')
    args = parser.parse_args()

    configure_logging()
    import_models()

    if args.create_tables:
        Base.metadata.create_all(engine)

    rows = read_csv(args.csv) if args.csv else []
    if args.do_import and rows:
        logger.info("Imported %d leads", import_leads(rows))

    lead_ids = list(args.ids) + [row['id'] for row in rows]
    if not lead_ids:
        parser.error('no lead ids given (use --ids or --csv)')

    manager = get_run_manager()
    try:
        summary, results = manager.run_batch(lead_ids, source_label=args.label, force=args.force)
    except SkipTraceError as e:
        logger.error("Batch refused: %s", e)
        return 1

    report = manager.reports.get_or_create_report(summary.run_id)
    os.makedirs(args.out, exist_ok=True)
    path = os.path.join(args.out, f'run_{summary.run_id}.json')
    with open(path, 'w') as f:
        json.dump(report, f, indent=2)

    succeeded = sum(1 for r in results if r.success)
    print(f"Run {summary.run_id}: {succeeded}/{len(results)} succeeded, "
          f"{report['totals']['cost_cents']} cents spent, soft_paused={summary.soft_paused}")
    print(f"Report written to {path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
