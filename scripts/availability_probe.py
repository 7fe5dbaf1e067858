import argparse
import sys
from datetime import date
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlalchemy import select  # noqa: E402

from agenda.availability import compute_slots  # noqa: E402
from agenda.db import SessionLocal  # noqa: E402
from agenda.errors import AgendaError  # noqa: E402
from agenda.models import Tenant  # noqa: E402


def probe(tenant_slug: str, branch_id: int, service_id: int, day: date) -> list[dict]:
    with SessionLocal() as db:
        tenant = db.execute(
            select(Tenant).where(Tenant.slug == tenant_slug.strip().lower())
        ).scalar_one_or_none()
        if tenant is None:
            raise SystemExit(f"Tenant not found: {tenant_slug}")
        return compute_slots(db, tenant.id, branch_id, service_id, day)


def main() -> int:
    parser = argparse.ArgumentParser(description="Print bookable slots for a service on a day")
    parser.add_argument("--tenant", required=True, help="tenant slug")
    parser.add_argument("--branch-id", type=int, required=True)
    parser.add_argument("--service-id", type=int, required=True)
    parser.add_argument("--day", type=date.fromisoformat, required=True, help="YYYY-MM-DD")
    args = parser.parse_args()

    try:
        slots = probe(args.tenant, args.branch_id, args.service_id, args.day)
    except AgendaError as exc:
        print(f"error: {exc.code}: {exc.message}", file=sys.stderr)
        return 1

    if not slots:
        print("No availability for this day.")
        return 0
    for slot in slots:
        employees = ",".join(str(e) for e in slot["employee_ids_free"])
        print(f"{slot['time_string']} ({slot['time_string_12h']}) employees={employees}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
