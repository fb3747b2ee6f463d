import unittest

import requests
import responses

from schoolcal.caldav_client import (
    CalDAVPushClient,
    PushState,
    build_resource_url,
    next_push_state,
)
from schoolcal.errors import ConfigurationError
from schoolcal.models import CalendarTargetConfig

CALENDAR_URL = "https://dav.example.com/calendars/parent/school/"
UID = "gym-kid42-20240311-P3"
RESOURCE_URL = f"{CALENDAR_URL}{UID}.ics"
PAYLOAD = "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n"


def _client() -> CalDAVPushClient:
    return CalDAVPushClient(
        CalendarTargetConfig(base_url=CALENDAR_URL, username="parent", password="secret", timeout_seconds=5)
    )


class NextPushStateTests(unittest.TestCase):
    def test_transitions(self) -> None:
        table = [
            (PushState.ATTEMPT_CREATE, 201, PushState.DONE),
            (PushState.ATTEMPT_CREATE, 204, PushState.DONE),
            (PushState.ATTEMPT_CREATE, 412, PushState.ATTEMPT_UPDATE),
            (PushState.ATTEMPT_CREATE, 403, PushState.FAILED),
            (PushState.ATTEMPT_UPDATE, 204, PushState.DONE),
            (PushState.ATTEMPT_UPDATE, 412, PushState.RECOVER_DELETE),
            (PushState.ATTEMPT_UPDATE, 500, PushState.FAILED),
            (PushState.RECOVER_DELETE, 204, PushState.FINAL_CREATE),
            (PushState.RECOVER_DELETE, 404, PushState.FINAL_CREATE),
            (PushState.RECOVER_DELETE, 500, PushState.FAILED),
            (PushState.FINAL_CREATE, 201, PushState.DONE),
            (PushState.FINAL_CREATE, 412, PushState.FAILED),
        ]
        for state, status, expected in table:
            with self.subTest(state=state, status=status):
                self.assertEqual(next_push_state(state, status), expected)

    def test_terminal_states_stay_put(self) -> None:
        self.assertEqual(next_push_state(PushState.DONE, 500), PushState.DONE)
        self.assertEqual(next_push_state(PushState.FAILED, 200), PushState.FAILED)


class ResourceUrlTests(unittest.TestCase):
    def test_uid_is_percent_encoded_with_prefix(self) -> None:
        url = build_resource_url("https://dav.example.com/cal", "gym-kid42/x y", prefix="sc-")
        self.assertEqual(url, "https://dav.example.com/cal/sc-gym-kid42%2Fx%20y.ics")

    def test_incomplete_config_is_rejected(self) -> None:
        with self.assertRaises(ConfigurationError):
            CalDAVPushClient(CalendarTargetConfig(base_url=CALENDAR_URL, username="parent"))


class CalDAVPushClientTests(unittest.TestCase):
    @responses.activate
    def test_create_succeeds_with_single_request(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=201)
        client = _client()
        result = client.push(client.resource_url(UID), UID, PAYLOAD)

        self.assertTrue(result.ok)
        self.assertEqual(result.state, PushState.DONE)
        self.assertEqual(len(responses.calls), 1)
        request = responses.calls[0].request
        self.assertEqual(request.headers["If-None-Match"], "*")
        self.assertEqual(request.headers["Content-Type"], "text/calendar; charset=utf-8")
        self.assertTrue(request.headers["Authorization"].startswith("Basic "))

    @responses.activate
    def test_existing_resource_is_updated(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.PUT, RESOURCE_URL, status=204)
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertTrue(result.ok)
        self.assertEqual(len(responses.calls), 2)
        self.assertEqual(responses.calls[1].request.headers["If-Match"], "*")
        self.assertNotIn("If-None-Match", responses.calls[1].request.headers)

    @responses.activate
    def test_recovers_with_delete_and_final_create(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.DELETE, RESOURCE_URL, status=204)
        responses.add(responses.PUT, RESOURCE_URL, status=201)
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertTrue(result.ok)
        self.assertEqual(
            [call.request.method for call in responses.calls],
            ["PUT", "PUT", "DELETE", "PUT"],
        )
        final = responses.calls[3].request
        self.assertNotIn("If-None-Match", final.headers)
        self.assertNotIn("If-Match", final.headers)
        self.assertEqual(
            [step.state for step in result.steps],
            [
                PushState.ATTEMPT_CREATE,
                PushState.ATTEMPT_UPDATE,
                PushState.RECOVER_DELETE,
                PushState.FINAL_CREATE,
            ],
        )

    @responses.activate
    def test_delete_not_found_still_recreates(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.DELETE, RESOURCE_URL, status=404)
        responses.add(responses.PUT, RESOURCE_URL, status=201)
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertTrue(result.ok)
        self.assertEqual(len(responses.calls), 4)

    @responses.activate
    def test_delete_failure_stops_push(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.DELETE, RESOURCE_URL, status=500, body="server exploded")
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertFalse(result.ok)
        self.assertEqual(result.state, PushState.FAILED)
        self.assertEqual(result.status_code, 500)
        self.assertEqual(result.body, "server exploded")
        self.assertEqual(len(responses.calls), 3)

    @responses.activate
    def test_final_create_failure_reports_excerpt(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.PUT, RESOURCE_URL, status=412)
        responses.add(responses.DELETE, RESOURCE_URL, status=204)
        responses.add(responses.PUT, RESOURCE_URL, status=507, body="x" * 1000)
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 507)
        self.assertEqual(len(result.body), 300)
        self.assertIn("final_create", result.reason)
        self.assertEqual(len(responses.calls), 4)

    @responses.activate
    def test_create_rejected_without_conflict_fails_immediately(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, status=403, body="forbidden")
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertFalse(result.ok)
        self.assertEqual(result.status_code, 403)
        self.assertEqual(len(responses.calls), 1)

    @responses.activate
    def test_transport_error_is_a_failure(self) -> None:
        responses.add(responses.PUT, RESOURCE_URL, body=requests.exceptions.ConnectTimeout("timed out"))
        result = _client().push(RESOURCE_URL, UID, PAYLOAD)

        self.assertFalse(result.ok)
        self.assertIsNone(result.status_code)
        self.assertIn("ConnectTimeout", result.reason)
        self.assertEqual(result.to_dict()["state"], "failed")


if __name__ == "__main__":
    unittest.main()
