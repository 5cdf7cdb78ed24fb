#!/usr/bin/env python3
import argparse
import json
import logging
import os
import re
import sys
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

DEFAULT_DB_SCHEMA = "gs_touchpoint_ledger"
DEFAULT_LIST_LIMIT = 20
DEFAULT_STATS_DAYS = 30
DEFAULT_GAP_DAYS = 14
LOOKUP_TABLES = ("programs", "scholars", "staff")
SEEDED_TABLES = ("programs", "staff", "scholars", "touchpoints")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

SEED_PROGRAMS: List[Tuple[str, str]] = [
    ("Future Scholars North", "Midwest"),
    ("STEM Horizon", "South"),
    ("Bridge to Campus", "West"),
]

SEED_STAFF: List[Tuple[str, str]] = [
    ("Daria Mendez", "Scholar Success"),
    ("Jordan Lee", "Program Director"),
    ("Imani Patel", "Mentor Liaison"),
]

SEED_SCHOLARS: List[Tuple[str, str, str]] = [
    ("Avery Green", "2026", "Future Scholars North"),
    ("Nico Alvarez", "2025", "STEM Horizon"),
    ("Priya Shah", "2027", "Bridge to Campus"),
    ("Mateo Cruz", "2026", "Future Scholars North"),
    ("Jules Martin", "2025", "STEM Horizon"),
]

log = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for failures the CLI reports and exits on."""


class ConfigError(LedgerError):
    pass


class ValidationError(LedgerError):
    pass


class NotFoundError(LedgerError):
    pass


@dataclass
class LedgerConfig:
    dsn: str
    schema: str


@dataclass
class SeedTouchpoint:
    program: str
    scholar: str
    staff: str
    kind: str
    channel: str
    days_ago: int
    notes: str


@dataclass
class TouchpointRow:
    touchpoint_id: int
    program: str
    scholar: str
    staff: str
    kind: str
    channel: str
    occurred_at: datetime
    notes: str


@dataclass
class ChannelCount:
    channel: str
    count: int


@dataclass
class StatsReport:
    days: int
    total: int
    channels: List[ChannelCount]


@dataclass
class GapRecord:
    name: str
    cohort: str
    program: str
    last_touch: Optional[datetime]


SEED_TOUCHPOINTS: List[SeedTouchpoint] = [
    SeedTouchpoint(
        "Future Scholars North", "Avery Green", "Daria Mendez", "Check-in", "Call", 4,
        "Reviewed midterm goals and internship applications.",
    ),
    SeedTouchpoint(
        "STEM Horizon", "Nico Alvarez", "Jordan Lee", "Mentor Match", "Email", 12,
        "Shared three mentor matches for spring semester.",
    ),
    SeedTouchpoint(
        "Bridge to Campus", "Priya Shah", "Imani Patel", "Workshop", "Zoom", 20,
        "Attended financial aid workshop.",
    ),
    SeedTouchpoint(
        "Future Scholars North", "Mateo Cruz", "Daria Mendez", "Campus Visit", "In-person", 30,
        "Visited campus and met admissions.",
    ),
    SeedTouchpoint(
        "STEM Horizon", "Jules Martin", "Imani Patel", "Check-in", "SMS", 7,
        "Confirmed scholarship application timeline.",
    ),
]


def validate_schema_name(schema: str) -> str:
    if not re.match(r"^[A-Za-z_][A-Za-z0-9_]*$", schema or ""):
        raise ConfigError(f"invalid schema name {schema!r}: use letters, numbers, and underscores only")
    return schema


def resolve_db_dsn() -> Optional[str]:
    explicit = (os.getenv("GS_TOUCHPOINT_DSN") or "").strip()
    if explicit:
        return explicit
    host = os.getenv("PGHOST")
    user = os.getenv("PGUSER")
    name = os.getenv("PGDATABASE")
    if not all([host, user, name]):
        return None
    port = os.getenv("PGPORT") or "5432"
    password = os.getenv("PGPASSWORD") or ""
    sslmode = os.getenv("PGSSLMODE") or "require"
    return (
        f"postgresql://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}:{port}/{name}?sslmode={sslmode}"
    )


def load_config(schema: Optional[str] = None) -> LedgerConfig:
    dsn = resolve_db_dsn()
    if not dsn:
        raise ConfigError("missing GS_TOUCHPOINT_DSN or PG* environment variables")
    schema = schema or os.getenv("GS_TOUCHPOINT_SCHEMA") or DEFAULT_DB_SCHEMA
    return LedgerConfig(dsn=dsn, schema=validate_schema_name(schema))


def require_psycopg() -> "module":
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise SystemExit("psycopg is required. Install with: pip install psycopg[binary]") from exc
    return psycopg


def parse_touch_date(value: Optional[str], now: Optional[datetime] = None) -> datetime:
    value = (value or "").strip()
    if not value:
        return now or datetime.now(timezone.utc)
    if not DATE_PATTERN.match(value):
        raise ValidationError(f"invalid date: {value!r} (expected YYYY-MM-DD)")
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d")
    except ValueError as exc:
        raise ValidationError(f"invalid date: {exc}") from exc
    return parsed.replace(tzinfo=timezone.utc)


def truncate(value: str, width: int) -> str:
    if len(value) <= width:
        return value
    if width <= 1:
        return value[:width]
    return value[: width - 1] + "."


def null_if_empty(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value


def require_non_negative(label: str, value: int) -> int:
    if value < 0:
        raise ValidationError(f"{label} must be zero or greater, got {value}")
    return value


def format_day(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.strftime("%Y-%m-%d")


def schema_statements(schema: str) -> List[str]:
    return [
        f"CREATE SCHEMA IF NOT EXISTS {schema}",
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.programs (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            region TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.staff (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            role TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.scholars (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            cohort TEXT NOT NULL,
            program_id INTEGER NOT NULL REFERENCES {schema}.programs(id),
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS {schema}.touchpoints (
            id SERIAL PRIMARY KEY,
            program_id INTEGER NOT NULL REFERENCES {schema}.programs(id),
            scholar_id INTEGER NOT NULL REFERENCES {schema}.scholars(id),
            staff_id INTEGER NOT NULL REFERENCES {schema}.staff(id),
            kind TEXT NOT NULL,
            channel TEXT NOT NULL,
            occurred_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            notes TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_touchpoints_occurred_at ON {schema}.touchpoints (occurred_at DESC)",
        f"CREATE INDEX IF NOT EXISTS idx_touchpoints_scholar ON {schema}.touchpoints (scholar_id)",
    ]


def ensure_schema(conn: "object", schema: str) -> None:
    with conn.cursor() as cur:
        for statement in schema_statements(schema):
            log.info("Applying: %s", " ".join(statement.split())[:80])
            cur.execute(statement)


def lookup_id(conn: "object", schema: str, table: str, name: str) -> int:
    if table not in LOOKUP_TABLES:
        raise ValidationError(f"unknown lookup table: {table}")
    with conn.cursor() as cur:
        cur.execute(f"SELECT id FROM {schema}.{table} WHERE name = %s", (name,))
        row = cur.fetchone()
    if row is None:
        raise NotFoundError(f"{table} not found: {name}")
    log.debug("Resolved %s %r to id %s", table, name, row[0])
    return int(row[0])


def add_touchpoint(
    conn: "object",
    schema: str,
    program: str,
    scholar: str,
    staff: str,
    kind: str,
    channel: str,
    occurred_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> int:
    if not all((value or "").strip() for value in (program, scholar, staff, kind, channel)):
        raise ValidationError("add requires --program, --scholar, --staff, --type, --channel")
    if occurred_at is None:
        occurred_at = datetime.now(timezone.utc)

    program_id = lookup_id(conn, schema, "programs", program)
    scholar_id = lookup_id(conn, schema, "scholars", scholar)
    staff_id = lookup_id(conn, schema, "staff", staff)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO {schema}.touchpoints
                (program_id, scholar_id, staff_id, kind, channel, occurred_at, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (program_id, scholar_id, staff_id, kind, channel, occurred_at, null_if_empty(notes)),
        )
        touchpoint_id = int(cur.fetchone()[0])
    log.debug("Inserted touchpoint %s", touchpoint_id)
    return touchpoint_id


def fetch_touchpoints(conn: "object", schema: str, limit: int) -> List[TouchpointRow]:
    require_non_negative("--limit", limit)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT t.id, p.name, s.name, st.name, t.kind, t.channel, t.occurred_at, COALESCE(t.notes, '')
            FROM {schema}.touchpoints t
            JOIN {schema}.programs p ON p.id = t.program_id
            JOIN {schema}.scholars s ON s.id = t.scholar_id
            JOIN {schema}.staff st ON st.id = t.staff_id
            ORDER BY t.occurred_at DESC, t.id DESC
            LIMIT %s
            """,
            (limit,),
        )
        rows = cur.fetchall()
    return [TouchpointRow(*row) for row in rows]


def fetch_stats(conn: "object", schema: str, days: int) -> StatsReport:
    require_non_negative("--days", days)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT COUNT(*)
            FROM {schema}.touchpoints
            WHERE occurred_at >= CURRENT_DATE - %s::int
            """,
            (days,),
        )
        total = int(cur.fetchone()[0])
        cur.execute(
            f"""
            SELECT channel, COUNT(*)
            FROM {schema}.touchpoints
            WHERE occurred_at >= CURRENT_DATE - %s::int
            GROUP BY channel
            ORDER BY COUNT(*) DESC, channel
            """,
            (days,),
        )
        channels = [ChannelCount(channel=row[0], count=int(row[1])) for row in cur.fetchall()]
    return StatsReport(days=days, total=total, channels=channels)


def fetch_gaps(conn: "object", schema: str, days: int) -> List[GapRecord]:
    require_non_negative("--days", days)
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT s.name, s.cohort, p.name, MAX(t.occurred_at) AS last_touch
            FROM {schema}.scholars s
            JOIN {schema}.programs p ON p.id = s.program_id
            LEFT JOIN {schema}.touchpoints t ON t.scholar_id = s.id
            GROUP BY s.id, s.name, s.cohort, p.name
            HAVING MAX(t.occurred_at) IS NULL
                OR MAX(t.occurred_at) < NOW() - make_interval(days => %s::int)
            ORDER BY last_touch ASC NULLS FIRST, s.name
            """,
            (days,),
        )
        rows = cur.fetchall()
    return [GapRecord(*row) for row in rows]


def table_counts(conn: "object", schema: str) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    with conn.cursor() as cur:
        for table in SEEDED_TABLES:
            cur.execute(f"SELECT COUNT(*) FROM {schema}.{table}")
            counts[table] = int(cur.fetchone()[0])
    return counts


def seed_fixtures(conn: "object", schema: str, now: Optional[datetime] = None) -> Dict[str, int]:
    now = now or datetime.now(timezone.utc)
    with conn.cursor() as cur:
        for name, region in SEED_PROGRAMS:
            cur.execute(
                f"""
                INSERT INTO {schema}.programs (name, region)
                VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET region = EXCLUDED.region
                """,
                (name, region),
            )
        for name, role in SEED_STAFF:
            cur.execute(
                f"""
                INSERT INTO {schema}.staff (name, role)
                VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET role = EXCLUDED.role
                """,
                (name, role),
            )
    log.info("Upserted %d programs and %d staff", len(SEED_PROGRAMS), len(SEED_STAFF))

    for name, cohort, program in SEED_SCHOLARS:
        program_id = lookup_id(conn, schema, "programs", program)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {schema}.scholars (name, cohort, program_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (name) DO UPDATE SET cohort = EXCLUDED.cohort, program_id = EXCLUDED.program_id
                """,
                (name, cohort, program_id),
            )
    log.info("Upserted %d scholars", len(SEED_SCHOLARS))

    inserted = 0
    for fixture in SEED_TOUCHPOINTS:
        params = {
            "program_id": lookup_id(conn, schema, "programs", fixture.program),
            "scholar_id": lookup_id(conn, schema, "scholars", fixture.scholar),
            "staff_id": lookup_id(conn, schema, "staff", fixture.staff),
            "kind": fixture.kind,
            "channel": fixture.channel,
            "occurred_at": now - timedelta(days=fixture.days_ago),
            "notes": fixture.notes,
        }
        with conn.cursor() as cur:
            cur.execute(
                f"""
                INSERT INTO {schema}.touchpoints
                    (program_id, scholar_id, staff_id, kind, channel, occurred_at, notes)
                SELECT %(program_id)s, %(scholar_id)s, %(staff_id)s, %(kind)s, %(channel)s,
                    %(occurred_at)s, %(notes)s
                WHERE NOT EXISTS (
                    SELECT 1 FROM {schema}.touchpoints
                    WHERE scholar_id = %(scholar_id)s
                      AND staff_id = %(staff_id)s
                      AND kind = %(kind)s
                      AND channel = %(channel)s
                      AND notes = %(notes)s
                )
                """,
                params,
            )
            inserted += cur.rowcount
    log.info("Inserted %d of %d fixture touchpoints", inserted, len(SEED_TOUCHPOINTS))

    return table_counts(conn, schema)


def touchpoints_payload(rows: List[TouchpointRow]) -> List[Dict[str, object]]:
    payload = []
    for row in rows:
        item = asdict(row)
        item["occurred_at"] = row.occurred_at.isoformat()
        payload.append(item)
    return payload


def stats_payload(report: StatsReport) -> Dict[str, object]:
    return asdict(report)


def gaps_payload(days: int, gaps: List[GapRecord]) -> Dict[str, object]:
    return {
        "days": days,
        "scholars": [
            {
                "name": gap.name,
                "cohort": gap.cohort,
                "program": gap.program,
                "last_touch": gap.last_touch.isoformat() if gap.last_touch else None,
            }
            for gap in gaps
        ],
    }


def print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2))


def print_touchpoints(rows: List[TouchpointRow]) -> None:
    print(
        f"{'ID':<4} {'Program':<20} {'Scholar':<18} {'Staff':<18} "
        f"{'Type':<14} {'Channel':<10} {'Date':<12} Notes"
    )
    for row in rows:
        print(
            f"{row.touchpoint_id:<4d} {truncate(row.program, 20):<20} {truncate(row.scholar, 18):<18} "
            f"{truncate(row.staff, 18):<18} {truncate(row.kind, 14):<14} {truncate(row.channel, 10):<10} "
            f"{format_day(row.occurred_at):<12} {row.notes}"
        )


def print_stats(report: StatsReport) -> None:
    print(f"Touchpoints in last {report.days} days: {report.total}")
    print("By channel:")
    for item in report.channels:
        print(f"  {item.channel:<10} {item.count}")


def print_gaps(days: int, gaps: List[GapRecord]) -> None:
    print(f"Scholars with no touchpoint in the last {days} days:")
    for gap in gaps:
        print(
            f"- {truncate(gap.name, 18):<18} {truncate(gap.cohort, 10):<10} "
            f"{truncate(gap.program, 18):<18} last: {format_day(gap.last_touch)}"
        )


def handle_add(conn: "object", schema: str, args: argparse.Namespace) -> None:
    occurred_at = parse_touch_date(args.date)
    touchpoint_id = add_touchpoint(
        conn,
        schema,
        program=args.program,
        scholar=args.scholar,
        staff=args.staff,
        kind=args.type,
        channel=args.channel,
        occurred_at=occurred_at,
        notes=args.notes,
    )
    print(f"Touchpoint logged (id {touchpoint_id}).")


def handle_list(conn: "object", schema: str, args: argparse.Namespace) -> None:
    rows = fetch_touchpoints(conn, schema, args.limit)
    if args.json:
        print_json(touchpoints_payload(rows))
    else:
        print_touchpoints(rows)


def handle_stats(conn: "object", schema: str, args: argparse.Namespace) -> None:
    report = fetch_stats(conn, schema, args.days)
    if args.json:
        print_json(stats_payload(report))
    else:
        print_stats(report)


def handle_gaps(conn: "object", schema: str, args: argparse.Namespace) -> None:
    gaps = fetch_gaps(conn, schema, args.days)
    if args.json:
        print_json(gaps_payload(args.days, gaps))
    else:
        print_gaps(args.days, gaps)


class LedgerArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(1, f"error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = LedgerArgumentParser(
        prog="ledger",
        description="Group Scholar Touchpoint Ledger: log and review staff touchpoints with scholars.",
    )
    parser.add_argument("--schema", help=f"Postgres schema for ledger tables (default: {DEFAULT_DB_SCHEMA})")
    parser.add_argument("--verbose", action="store_true", help="Log database activity to stderr")
    subparsers = parser.add_subparsers(dest="command", metavar="command", required=True)

    add = subparsers.add_parser("add", help="Log a new touchpoint")
    add.add_argument("--program", required=True, help="Program name")
    add.add_argument("--scholar", required=True, help="Scholar name")
    add.add_argument("--staff", required=True, help="Staff name")
    add.add_argument("--type", required=True, help="Touchpoint type")
    add.add_argument("--channel", required=True, help="Channel")
    add.add_argument("--date", default="", help="Touchpoint date (YYYY-MM-DD), defaults to now")
    add.add_argument("--notes", default="", help="Notes")
    add.set_defaults(handler=handle_add)

    list_parser = subparsers.add_parser("list", help="Show the most recent touchpoints")
    list_parser.add_argument("--limit", type=int, default=DEFAULT_LIST_LIMIT, help="Number of touchpoints to show")
    list_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    list_parser.set_defaults(handler=handle_list)

    stats = subparsers.add_parser("stats", help="Count touchpoints by channel")
    stats.add_argument("--days", type=int, default=DEFAULT_STATS_DAYS, help="Window in days")
    stats.add_argument("--json", action="store_true", help="Print JSON instead of text")
    stats.set_defaults(handler=handle_stats)

    gaps = subparsers.add_parser("gaps", help="List scholars without a recent touchpoint")
    gaps.add_argument("--days", type=int, default=DEFAULT_GAP_DAYS, help="Window in days")
    gaps.add_argument("--json", action="store_true", help="Print JSON instead of text")
    gaps.set_defaults(handler=handle_gaps)

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(message)s",
        stream=sys.stderr,
    )


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(args.verbose)
    psycopg = require_psycopg()
    try:
        config = load_config(args.schema)
        log.debug("Connecting with schema %s", config.schema)
        with psycopg.connect(config.dsn) as conn:
            args.handler(conn, config.schema, args)
    except (LedgerError, psycopg.Error) as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    main()
