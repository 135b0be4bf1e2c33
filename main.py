#!/usr/bin/env python3
"""
Gatehouse - local and third-party login service.
"""

import argparse
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep gatehouse imports lazy (inside main) so `--migrate` does not pull in the web stack.
#


def migrate() -> int:
    """Apply pending Postgres migrations for the user store."""
    from gatehouse.storage.config import load_store_config
    from gatehouse.storage.migrate import migrate_user_store

    cfg = load_store_config()
    dsn = cfg.postgres.conninfo()
    if not dsn:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).", file=sys.stderr)
        return 2
    report = migrate_user_store(dsn)
    print(f"{cfg.postgres.target()}: {report.summary()}")
    return 0


def main() -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Gatehouse authentication service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP API (in-memory user store unless USER_STORE=postgres)
  python main.py --serve --port 8080

  # Create/upgrade the Postgres users table
  python main.py --migrate
        """,
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    if args.migrate:
        return migrate()

    if args.serve:
        from gatehouse.api.server import run

        run(host=args.host, port=args.port)
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
