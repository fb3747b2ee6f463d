import tempfile
import unittest
from datetime import date, datetime, timezone

from schoolcal.archive_store import ArchiveStore
from schoolcal.exporter import (
    build_domain_records,
    combine_date_and_time,
    export_archive,
    extract_period_times,
    normalize_time_label,
    owner_key,
    substitution_summary,
)
from schoolcal.models import AccountConfig, KidConfig
from schoolcal.source import SourceBatch, SourceRecord

TIMETABLE = [
    {"type": "info", "value": "1", "detail": "07.55 - 08.40"},
    {"type": "info", "value": "2", "detail": "8:45h-9:30h"},
    {"type": "lesson", "value": "3", "detail": "09:50 - 10:35"},
    {"type": "info", "value": "x", "detail": "10:40 - 11:25"},
]


def _account() -> AccountConfig:
    return AccountConfig(short="gym", school_name="Gymnasium Nord", feed_url="https://portal.example.com/feed")


def _kid() -> KidConfig:
    return KidConfig(id="42", first_name="Anna", last_name="Muller", class_name="5a")


class PeriodTimeTests(unittest.TestCase):
    def test_normalize_time_label(self) -> None:
        self.assertEqual(normalize_time_label("7.55"), "07:55")
        self.assertEqual(normalize_time_label("8:45h"), "08:45")
        self.assertIsNone(normalize_time_label("25:00"))
        self.assertIsNone(normalize_time_label(""))

    def test_extract_period_times(self) -> None:
        self.assertEqual(
            extract_period_times(TIMETABLE),
            {
                "1": {"start": "07:55", "end": "08:40"},
                "2": {"start": "08:45", "end": "09:30"},
            },
        )

    def test_combine_date_and_time_uses_local_zone(self) -> None:
        combined = combine_date_and_time(date(2024, 3, 11), "07:55", "Europe/Berlin")
        self.assertEqual(combined, datetime(2024, 3, 11, 6, 55, tzinfo=timezone.utc))


class RecordBuildingTests(unittest.TestCase):
    def test_substitution_summary(self) -> None:
        record = SourceRecord(
            kind="substitutions",
            slot=3,
            location="R12",
            details={
                "original_class": "Physics",
                "substitute_class": "Math",
                "original_teacher": "Mr. U",
                "substitute_teacher": "Mrs. T",
                "note": "bring calculator",
            },
        )
        self.assertEqual(
            substitution_summary(record),
            "3. period substitution. Math (previously Physics), with Mrs. T (previously Mr. U), "
            "room R12, bring calculator",
        )
        self.assertEqual(substitution_summary(SourceRecord(kind="substitutions")), "Substitution")

    def test_substitution_with_known_period_is_timed(self) -> None:
        records = [SourceRecord(kind="substitutions", date="11.03.2024", slot=1, location="R12")]
        built = build_domain_records(
            "substitutions",
            _account(),
            _kid(),
            records,
            period_times={"1": {"start": "07:55", "end": "08:40"}},
            tz_name="Europe/Berlin",
        )
        self.assertEqual(built[0].uid, "gym-kid42-20240311-P1")
        self.assertFalse(built[0].all_day)
        self.assertEqual(built[0].start, datetime(2024, 3, 11, 6, 55, tzinfo=timezone.utc))
        self.assertEqual(built[0].end, datetime(2024, 3, 11, 7, 40, tzinfo=timezone.utc))
        self.assertIn("Child: Anna Muller (5a)", built[0].description)

    def test_substitution_without_period_times_is_all_day(self) -> None:
        records = [SourceRecord(kind="substitutions", date="2024-03-11", slot=5)]
        built = build_domain_records("substitutions", _account(), _kid(), records)
        self.assertTrue(built[0].all_day)
        self.assertEqual(built[0].start, date(2024, 3, 11))

    def test_exam_summary_carries_class(self) -> None:
        records = [SourceRecord(kind="exams", title="Math test", origin_id="77", date="12.03.2024", all_day=True)]
        built = build_domain_records("exams", _account(), _kid(), records)
        self.assertEqual(built[0].uid, "gym-kid42-sa77")
        self.assertEqual(built[0].summary, "Math test (5a)")
        self.assertEqual(built[0].start, date(2024, 3, 12))
        self.assertTrue(built[0].all_day)


class ExportArchiveTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = ArchiveStore(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_export_saves_and_keeps_period_times(self) -> None:
        batch = SourceBatch(
            kind="substitutions",
            records=[SourceRecord(kind="substitutions", date="2024-03-11", slot=1)],
            last_update=datetime(2024, 3, 9, 7, 0, tzinfo=timezone.utc),
            timetable=TIMETABLE,
        )
        first = export_archive(self.store, _account(), _kid(), batch, tz_name="Europe/Berlin")
        self.assertEqual(first.key, owner_key(_kid(), "substitutions"))
        self.assertEqual(first.extracted, 1)
        self.assertIn("1", first.archive.metadata.auxiliary["period_times"])

        later = SourceBatch(
            kind="substitutions",
            records=[SourceRecord(kind="substitutions", date="2024-03-12", slot=2)],
        )
        second = export_archive(
            self.store, _account(), _kid(), later, existing=first.archive, tz_name="Europe/Berlin"
        )
        self.assertEqual([entry.uid for entry in second.archive.entries][0], "gym-kid42-20240311-P1")
        self.assertEqual(len(second.archive.entries), 2)
        self.assertFalse(second.archive.entries[1].all_day)
        self.assertEqual(second.archive.metadata.last_update, datetime(2024, 3, 9, 7, 0, tzinfo=timezone.utc))

        stored = self.store.load(first.key)
        self.assertEqual(len(stored.entries), 2)
        self.assertEqual(stored.metadata.school["identifier"], "gym")


if __name__ == "__main__":
    unittest.main()
