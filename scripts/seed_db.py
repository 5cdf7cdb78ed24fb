#!/usr/bin/env python3
import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT))

import touchpoint_ledger as ledger  # noqa: E402


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the Touchpoint Ledger schema and seed sample data.")
    parser.add_argument("--schema", help=f"Postgres schema name (default: {ledger.DEFAULT_DB_SCHEMA})")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    psycopg = ledger.require_psycopg()
    try:
        config = ledger.load_config(args.schema)
        # One transaction: a failure part-way leaves the database untouched.
        with psycopg.connect(config.dsn) as conn:
            ledger.ensure_schema(conn, config.schema)
            counts = ledger.seed_fixtures(conn, config.schema)
    except (ledger.LedgerError, psycopg.Error) as exc:
        raise SystemExit(f"error: {exc}") from exc

    print("Schema migrated and seeded.")
    for table, count in counts.items():
        print(f"  {table:<12} {count}")


if __name__ == "__main__":
    main()
