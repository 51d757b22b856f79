"""
🧹 Contact deduplication
------------------------
Collapses contacts that share a digits-only number into one row.

Per duplicate group:
  - keep the row with the most filled fields (newest rowid on ties)
  - fill its blank fields from the other rows, oldest first
  - status becomes ``active`` if any row in the group is active
  - delete the rest

Runs in one transaction; ``--dry-run`` only reports.
"""

from __future__ import annotations

import argparse
import sys
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from outreach.datastore import Contact, ContactStore
from outreach.runtime import get_logger, normalize_number
from outreach.schema import ContactStatus, is_active_status

logger = get_logger("dedupe_contacts")

MERGE_ATTRS = ("contact_name", "agent_name", "clean_contact_number", "city", "property_type", "notes")


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def field_score(contact: Contact) -> int:
    return sum(1 for attr in MERGE_ATTRS if _text(getattr(contact, attr)))


def pick_canonical(rows: List[Contact]) -> Contact:
    return max(rows, key=lambda c: (field_score(c), c.rowid))


def merged_values(rows: List[Contact], canonical: Contact) -> Dict[str, Any]:
    ordered = sorted(rows, key=lambda c: c.rowid)
    values: Dict[str, Any] = {}
    for attr in MERGE_ATTRS:
        value = next((_text(getattr(c, attr)) for c in ordered if _text(getattr(c, attr))), "")
        values[attr] = value or None
    if any(is_active_status(c.conversation_started) for c in rows):
        values["conversation_started"] = ContactStatus.ACTIVE.value
    else:
        values["conversation_started"] = canonical.conversation_started or ContactStatus.PENDING.value
    return values


def dedupe_contacts(store: ContactStore, dry_run: bool = False) -> Dict[str, Any]:
    with store.session() as db:
        rows = list(db.scalars(select(Contact).order_by(Contact.rowid)))
        groups: Dict[str, List[Contact]] = defaultdict(list)
        skipped: List[int] = []
        for contact in rows:
            digits = normalize_number(contact.clean_contact_number)
            if not digits:
                skipped.append(contact.rowid)
                continue
            groups[digits].append(contact)

        dedupe_groups = removed = 0
        for number, group in groups.items():
            if len(group) < 2:
                continue
            dedupe_groups += 1
            canonical = pick_canonical(group)
            values = merged_values(group, canonical)
            logger.info(
                "🔗 %s: keeping rowid %s, removing %s",
                number,
                canonical.rowid,
                [c.rowid for c in group if c is not canonical],
            )
            if dry_run:
                removed += len(group) - 1
                continue
            for attr, value in values.items():
                setattr(canonical, attr, value)
            for contact in group:
                if contact is not canonical:
                    db.delete(contact)
                    removed += 1

    summary = {"groups": dedupe_groups, "removed": removed, "skipped": skipped, "dry_run": dry_run}
    logger.info("🧹 Dedupe complete: %s", summary)
    return summary


# ---------- CLI ----------
def _parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Merge contacts that share a phone number.")
    p.add_argument("--database-url", default=None, help="SQLAlchemy URL (defaults to DATABASE_URL).")
    p.add_argument("--dry-run", action="store_true", help="Report duplicate groups without changing anything.")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    store = ContactStore(args.database_url)
    try:
        summary = dedupe_contacts(store, dry_run=args.dry_run)
    except Exception as e:
        print(f"Deduplication failed: {e}", file=sys.stderr)
        return 1
    finally:
        store.dispose()

    print(f"Deduped groups: {summary['groups']}")
    print(f"Removed rows: {summary['removed']}")
    if summary["skipped"]:
        print(f"Skipped rows without numbers: {', '.join(str(r) for r in summary['skipped'])}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
