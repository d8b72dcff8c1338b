"""Command-line interface for the investor portal service."""

from __future__ import annotations
import argparse
import logging
import sys
from pathlib import Path
from typing import Sequence

from portal.config import PortalSettings, SeedData, load_seed_file
from portal.database import Database, resolve_database_path
from portal.seed import seed_database

logger = logging.getLogger("investor_portal.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Investor portal utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the portal database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )

    seed_parser = subparsers.add_parser(
        "seed", help="Create the initial administrators and allowlist entries"
    )
    seed_parser.add_argument(
        "--admin-email",
        action="append",
        default=[],
        help="Administrator email to create; may be repeated",
    )
    seed_parser.add_argument(
        "--file",
        dest="seed_file",
        default=None,
        help="YAML file with 'admins', 'domains' and 'emails' lists",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "seed"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _initialise_database(settings: PortalSettings) -> Database:
    db_path = resolve_database_path(settings.database_path)
    database = Database(db_path)
    database.initialize()
    logger.info("Database initialised at %s", db_path)
    return database


def _serve(*, settings: PortalSettings, database: Database, host: str, port: int) -> None:
    from portal.service import create_app
    import uvicorn

    logger.info("Starting investor portal API on http://%s:%s", host, port)
    app = create_app(settings=settings, database=database)
    uvicorn.run(app, host=host, port=port, log_level="info")


def _seed(
    *,
    settings: PortalSettings,
    database: Database,
    admin_emails: Sequence[str],
    seed_file: str | None,
) -> int:
    data = load_seed_file(Path(seed_file)) if seed_file else SeedData()
    admins = [*data.admins, *(email.strip().lower() for email in admin_emails)]
    if not admins and settings.seed_admin_email:
        admins.append(settings.seed_admin_email.strip().lower())
    if not admins and not data.domains and not data.emails:
        print("Nothing to seed. Provide --admin-email, --file or PORTAL_SEED_ADMIN_EMAIL.", file=sys.stderr)
        return 1

    try:
        summary = seed_database(database, admins, domains=data.domains, emails=data.emails)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    for key, values in summary.as_dict().items():
        if values:
            print(f"{key}: {', '.join(values)}")
    print("Seeding complete.")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    settings = PortalSettings.from_env()
    database = _initialise_database(settings)

    if args.command == "serve":
        _serve(settings=settings, database=database, host=args.host, port=args.port)
    elif args.command == "seed":
        return _seed(
            settings=settings,
            database=database,
            admin_emails=args.admin_email,
            seed_file=args.seed_file,
        )
    elif args.command == "init-db":
        print("Database initialisation complete.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
