#!/usr/bin/env python3
"""Report (and optionally repair) drift between account and provider-profile approval status.

The account's provider_status / is_provider pair is authoritative; the provider
profile's approval_status is a mirror that a contained partial failure can leave behind.
"""
import argparse
import json
import os
import sys
from typing import Any, Dict, List

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from app.services.seva_store import SevaStore, default_db  # noqa: E402


def expected_mirror(provider_status: Any) -> str:
    # Pending or revoked accounts leave an existing profile row as it was.
    return str(provider_status) if provider_status in {"approved", "rejected"} else ""


def find_drift(store: SevaStore) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    for account in store.list_accounts():
        should_have_access = account.provider_status == "approved"
        if account.is_provider != should_have_access:
            rows.append(
                {
                    "user_id": account.id,
                    "issue": "access_flag_mismatch",
                    "expected": should_have_access,
                    "actual": account.is_provider,
                }
            )
        profile = store.get_provider_profile_for_user(account.id)
        if should_have_access and profile is None:
            rows.append({"user_id": account.id, "issue": "missing_profile", "expected": "approved", "actual": None})
            continue
        expected = expected_mirror(account.provider_status)
        if profile is not None and expected and profile.approval_status != expected:
            rows.append(
                {
                    "user_id": account.id,
                    "issue": "status_mismatch",
                    "expected": expected,
                    "actual": profile.approval_status,
                }
            )
    return rows


def repair(store: SevaStore, rows: List[Dict[str, Any]]) -> int:
    repaired = 0
    for row in rows:
        if row["issue"] == "status_mismatch":
            store.update_provider_profile_for_user(row["user_id"], approval_status=row["expected"])
        elif row["issue"] == "missing_profile":
            account = store.get_account(row["user_id"])
            name = f"{account.first_name or ''} {account.last_name or ''}".strip() if account else ""
            store.create_provider_profile(row["user_id"], name=name or "New Priest", approval_status="approved")
        elif row["issue"] == "access_flag_mismatch":
            store.update_account(row["user_id"], is_provider=row["expected"])
        else:
            continue
        repaired += 1
    return repaired


def main() -> int:
    parser = argparse.ArgumentParser(description="Provider approval drift report")
    parser.add_argument("--db", default=os.getenv("SEVA_DB_PATH", default_db), help="Path to the sqlite store")
    parser.add_argument("--repair", action="store_true", help="Rewrite provider-profile mirrors from account records")
    parser.add_argument("--json", action="store_true", help="Print JSON instead of text")
    args = parser.parse_args()

    store = SevaStore(db_path=args.db)
    rows = find_drift(store)
    repaired = repair(store, rows) if args.repair else 0

    if args.json:
        print(json.dumps({"drift": rows, "repaired": repaired}, indent=2, sort_keys=True))
        return 0

    print(f"Accounts with drift: {len(rows)}")
    for row in rows:
        print(f"  {row['user_id']}: {row['issue']} expected={row['expected']} actual={row['actual']}")
    if args.repair:
        print(f"Repaired: {repaired}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
