import os
import unittest
import uuid

import touchpoint_ledger as ledger

TEST_DSN = os.getenv("GS_TOUCHPOINT_TEST_DSN")


@unittest.skipUnless(TEST_DSN, "set GS_TOUCHPOINT_TEST_DSN to run against Postgres")
class LedgerDatabaseTest(unittest.TestCase):
    def setUp(self):
        import psycopg

        self.schema = f"ledger_test_{uuid.uuid4().hex[:10]}"
        self.conn = psycopg.connect(TEST_DSN)
        ledger.ensure_schema(self.conn, self.schema)
        ledger.seed_fixtures(self.conn, self.schema)
        self.conn.commit()

    def tearDown(self):
        self.conn.rollback()
        with self.conn.cursor() as cur:
            cur.execute(f"DROP SCHEMA IF EXISTS {self.schema} CASCADE")
        self.conn.commit()
        self.conn.close()

    def test_seeding_twice_keeps_row_counts(self):
        first = ledger.table_counts(self.conn, self.schema)
        ledger.ensure_schema(self.conn, self.schema)
        second = ledger.seed_fixtures(self.conn, self.schema)
        self.assertEqual(first, second)
        self.assertEqual(second, {"programs": 3, "staff": 3, "scholars": 5, "touchpoints": 5})

    def test_stats_after_seed(self):
        report = ledger.fetch_stats(self.conn, self.schema, 30)
        self.assertEqual(report.total, 5)
        self.assertEqual(sum(item.count for item in report.channels), 5)

    def test_add_resolves_names(self):
        touchpoint_id = ledger.add_touchpoint(
            self.conn, self.schema, "STEM Horizon", "Jules Martin", "Jordan Lee", "Check-in", "Call", notes=""
        )
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT p.name, s.name, st.name, t.notes
                FROM {self.schema}.touchpoints t
                JOIN {self.schema}.programs p ON p.id = t.program_id
                JOIN {self.schema}.scholars s ON s.id = t.scholar_id
                JOIN {self.schema}.staff st ON st.id = t.staff_id
                WHERE t.id = %s
                """,
                (touchpoint_id,),
            )
            self.assertEqual(cur.fetchone(), ("STEM Horizon", "Jules Martin", "Jordan Lee", None))

    def test_add_unknown_scholar_writes_nothing(self):
        with self.assertRaises(ledger.NotFoundError):
            ledger.add_touchpoint(self.conn, self.schema, "STEM Horizon", "Unknown Name", "Jordan Lee", "Check-in", "Call")
        self.assertEqual(ledger.table_counts(self.conn, self.schema)["touchpoints"], 5)

    def test_list_is_limited_and_newest_first(self):
        rows = ledger.fetch_touchpoints(self.conn, self.schema, 3)
        self.assertEqual(len(rows), 3)
        stamps = [row.occurred_at for row in rows]
        self.assertEqual(stamps, sorted(stamps, reverse=True))
        self.assertEqual(rows[0].scholar, "Avery Green")

    def test_gaps_report_stale_and_never_touched(self):
        program_id = ledger.lookup_id(self.conn, self.schema, "programs", "Bridge to Campus")
        with self.conn.cursor() as cur:
            cur.execute(
                f"INSERT INTO {self.schema}.scholars (name, cohort, program_id) VALUES (%s, %s, %s)",
                ("Rowan Hale", "2027", program_id),
            )
        gaps = ledger.fetch_gaps(self.conn, self.schema, 14)
        self.assertEqual([gap.name for gap in gaps], ["Rowan Hale", "Mateo Cruz", "Priya Shah"])
        self.assertIsNone(gaps[0].last_touch)


if __name__ == "__main__":
    unittest.main()
