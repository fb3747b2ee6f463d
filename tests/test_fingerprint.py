import unittest
from datetime import date, datetime, timezone

from schoolcal.fingerprint import compute_sync_hash, effective_reminders
from schoolcal.models import DomainRecord


def _record(**overrides) -> DomainRecord:
    values = {
        "uid": "gym-kid42-20240311-P3",
        "kind": "substitutions",
        "start": datetime(2024, 3, 11, 8, 0, tzinfo=timezone.utc),
        "end": datetime(2024, 3, 11, 8, 45, tzinfo=timezone.utc),
        "summary": "3. period substitution. Math",
        "description": "School: Gym (gym)",
        "location": "R12",
    }
    values.update(overrides)
    return DomainRecord(**values)


class FingerprintTests(unittest.TestCase):
    def test_same_content_same_hash(self) -> None:
        self.assertEqual(compute_sync_hash(_record()), compute_sync_hash(_record()))

    def test_bookkeeping_and_metadata_do_not_change_hash(self) -> None:
        base = compute_sync_hash(_record())
        touched = _record(
            last_synced_at=datetime(2024, 3, 10, tzinfo=timezone.utc),
            sync_hash="deadbeef",
            metadata={"period": 3},
        )
        self.assertEqual(compute_sync_hash(touched), base)

    def test_display_change_changes_hash(self) -> None:
        base = compute_sync_hash(_record())
        self.assertNotEqual(compute_sync_hash(_record(location="R13")), base)
        self.assertNotEqual(compute_sync_hash(_record(summary="Cancelled")), base)
        self.assertNotEqual(compute_sync_hash(_record(start=date(2024, 3, 11), all_day=True)), base)

    def test_reminder_order_is_irrelevant(self) -> None:
        self.assertEqual(
            compute_sync_hash(_record(), [30, 10]),
            compute_sync_hash(_record(), [10, 30]),
        )
        self.assertNotEqual(compute_sync_hash(_record(), [10]), compute_sync_hash(_record(), []))

    def test_effective_reminders_prefers_record(self) -> None:
        self.assertEqual(effective_reminders(_record(reminders=[5]), 60), [5])
        self.assertEqual(effective_reminders(_record(), 60), [60])
        self.assertEqual(effective_reminders(_record(), None), [])


if __name__ == "__main__":
    unittest.main()
