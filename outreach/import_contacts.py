"""
📥 Contact CSV import
---------------------
Loads an exported seller/agent CSV into the contacts table. Name, agent and
number columns are kept; every other non-empty column is folded into the
``notes`` JSON. New rows start as ``pending``; numbers already present are
skipped.
"""

from __future__ import annotations

import argparse
import csv
import json
import sys
from typing import Any, Dict, Iterable, List, Optional

from outreach.datastore import ContactStore
from outreach.runtime import get_logger, normalize_number
from outreach.schema import ContactStatus

logger = get_logger("import_contacts")

KEEP_COLUMNS = ("contactName", "agentName", "cleanContactNumber")


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def build_notes(record: Dict[str, Any], note_columns: Iterable[str]) -> Optional[str]:
    notes = {}
    for key in note_columns:
        value = _clean(record.get(key))
        if key and value is not None:
            notes[key] = value
    return json.dumps(notes, ensure_ascii=False) if notes else None


def read_csv(path: str) -> tuple[List[Dict[str, Any]], List[str]]:
    # utf-8-sig strips the BOM spreadsheet exports add
    with open(path, "r", encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        header = [(name or "").strip() for name in (reader.fieldnames or [])]
        reader.fieldnames = header
        records = [row for row in reader if any(_clean(v) for v in row.values() if not isinstance(v, list))]
    return records, header


def import_contacts(path: str, store: ContactStore) -> Dict[str, int]:
    records, header = read_csv(path)
    note_columns = [name for name in header if name and name not in KEEP_COLUMNS]
    known = store.known_numbers()

    imported = skipped = 0
    for record in records:
        number = _clean(record.get("cleanContactNumber"))
        digits = normalize_number(number)
        if digits and digits in known:
            skipped += 1
            continue
        fields = {
            "contactName": _clean(record.get("contactName")),
            "agentName": _clean(record.get("agentName")),
            "cleanContactNumber": number,
            "notes": build_notes(record, note_columns),
            "conversation_started": ContactStatus.PENDING.value,
        }
        try:
            store.create(fields)
        except ValueError:
            skipped += 1
            continue
        if digits:
            known.add(digits)
        imported += 1

    logger.info("📥 Imported %d rows (%d skipped) from %s", imported, skipped, path)
    return {"rows": len(records), "imported": imported, "skipped": skipped}


# ---------- CLI ----------
def _parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Import seller contacts from a CSV export.")
    p.add_argument("csv_path", help="CSV file to import.")
    p.add_argument("--database-url", default=None, help="SQLAlchemy URL (defaults to DATABASE_URL).")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    store = ContactStore(args.database_url)
    store.init_db()
    try:
        summary = import_contacts(args.csv_path, store)
    except FileNotFoundError:
        print(f"CSV file not found: {args.csv_path}", file=sys.stderr)
        return 1
    finally:
        store.dispose()

    if summary["rows"] == 0:
        print("No records found in CSV.", file=sys.stderr)
        return 1
    print(f"Imported {summary['imported']} rows ({summary['skipped']} skipped) into {store.database_url.split('@')[-1]}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
