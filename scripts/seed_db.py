import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal.config import SeedData, load_seed_file
from portal.database import Database, resolve_database_path
from portal.seed import seed_database


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed investor portal administrators and allowlist")
    parser.add_argument("admin_emails", nargs="*", help="Administrator email addresses")
    parser.add_argument("--file", dest="seed_file", default=None, help="YAML seed file")
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to PORTAL_DB_PATH or data/portal.sqlite3)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    data = load_seed_file(Path(args.seed_file)) if args.seed_file else SeedData()
    admins = [*data.admins, *(email.strip().lower() for email in args.admin_emails)]

    db_env = args.db_path or os.getenv("PORTAL_DB_PATH")
    database = Database(resolve_database_path(db_env))
    database.initialize()

    try:
        summary = seed_database(database, admins, domains=data.domains, emails=data.emails)
    except ValueError as exc:  # malformed addresses or domains
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Admins created: {len(summary.admins_created)} (existing {len(summary.admins_existing)})")
    print(f"Domains created: {len(summary.domains_created)} (existing {len(summary.domains_existing)})")
    print(f"Emails listed: {len(summary.emails_created)} (existing {len(summary.emails_existing)})")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
