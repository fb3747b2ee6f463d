from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import quote

import caldav
import requests
from requests.auth import HTTPBasicAuth

from schoolcal.errors import ConfigurationError
from schoolcal.models import CalendarInfo, CalendarTargetConfig

logger = logging.getLogger(__name__)

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8"
BODY_EXCERPT_LIMIT = 300


class PushState(str, Enum):
    ATTEMPT_CREATE = "attempt_create"
    ATTEMPT_UPDATE = "attempt_update"
    RECOVER_DELETE = "recover_delete"
    FINAL_CREATE = "final_create"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = {PushState.DONE, PushState.FAILED}


def _normalize_calendar_url(value: str) -> str:
    value = str(value or "").strip()
    return value if value.endswith("/") else f"{value}/"


def remote_uid(uid: str, prefix: str = "") -> str:
    return f"{prefix}{uid}" if prefix else uid


def build_resource_url(calendar_url: str, uid: str, prefix: str = "") -> str:
    return f"{_normalize_calendar_url(calendar_url)}{quote(remote_uid(uid, prefix), safe='')}.ics"


def next_push_state(state: PushState, status_code: int) -> PushState:
    """Transition of the push protocol after a response with ``status_code`` in ``state``."""
    success = 200 <= status_code < 300
    if state == PushState.ATTEMPT_CREATE:
        if success:
            return PushState.DONE
        if status_code == 412:
            return PushState.ATTEMPT_UPDATE
        return PushState.FAILED
    if state == PushState.ATTEMPT_UPDATE:
        if success:
            return PushState.DONE
        if status_code == 412:
            return PushState.RECOVER_DELETE
        return PushState.FAILED
    if state == PushState.RECOVER_DELETE:
        if success or status_code == 404:
            return PushState.FINAL_CREATE
        return PushState.FAILED
    if state == PushState.FINAL_CREATE:
        return PushState.DONE if success else PushState.FAILED
    return state


@dataclass
class PushStep:
    state: PushState
    method: str
    status_code: int | None


@dataclass
class PushResult:
    ok: bool
    uid: str
    url: str
    state: PushState
    status_code: int | None = None
    reason: str = ""
    body: str = ""
    steps: list[PushStep] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "uid": self.uid,
            "url": self.url,
            "state": self.state.value,
            "status_code": self.status_code,
            "reason": self.reason,
            "body": self.body,
            "steps": [
                {"state": step.state.value, "method": step.method, "status_code": step.status_code}
                for step in self.steps
            ],
        }


class CalDAVPushClient:
    """Writes single calendar resources with conditional PUT requests.

    A push walks create-only, update-only, delete and a final unconditional create, each
    at most once, so one call touches exactly one resource and always terminates.
    """

    def __init__(self, config: CalendarTargetConfig, session: requests.Session | None = None) -> None:
        if not config.is_configured():
            raise ConfigurationError("Calendar config is incomplete.")
        self.config = config
        self.session = session or requests.Session()
        self.session.auth = HTTPBasicAuth(config.username, config.password)

    def resource_url(self, uid: str) -> str:
        return build_resource_url(self.config.base_url, uid, self.config.uid_prefix)

    def _request_for(
        self, state: PushState, payload: str, etag: str | None
    ) -> tuple[str, dict[str, str], bytes | None]:
        if state == PushState.RECOVER_DELETE:
            return "DELETE", {}, None
        headers = {"Content-Type": ICS_CONTENT_TYPE}
        if state == PushState.ATTEMPT_CREATE:
            headers["If-None-Match"] = "*"
        elif state == PushState.ATTEMPT_UPDATE:
            headers["If-Match"] = etag or "*"
        return "PUT", headers, payload.encode("utf-8")

    def push(self, resource_url: str, uid: str, payload: str, etag: str | None = None) -> PushResult:
        state = PushState.ATTEMPT_CREATE
        steps: list[PushStep] = []
        response: requests.Response | None = None

        while state not in TERMINAL_STATES:
            method, headers, body = self._request_for(state, payload, etag)
            try:
                response = self.session.request(
                    method,
                    resource_url,
                    headers=headers,
                    data=body,
                    timeout=self.config.timeout_seconds,
                    allow_redirects=True,
                )
            except requests.RequestException as exc:
                steps.append(PushStep(state=state, method=method, status_code=None))
                logger.warning("%s %s failed in %s: %s", method, resource_url, state.value, exc)
                return PushResult(
                    ok=False,
                    uid=uid,
                    url=resource_url,
                    state=PushState.FAILED,
                    reason=f"transport error in {state.value}: {type(exc).__name__}: {exc}",
                    steps=steps,
                )
            steps.append(PushStep(state=state, method=method, status_code=response.status_code))
            next_state = next_push_state(state, response.status_code)
            logger.debug(
                "%s %s -> %s (%s -> %s)", method, resource_url, response.status_code, state.value, next_state.value
            )
            if next_state == PushState.FAILED:
                return PushResult(
                    ok=False,
                    uid=uid,
                    url=resource_url,
                    state=PushState.FAILED,
                    status_code=response.status_code,
                    reason=f"{method} rejected in {state.value}: HTTP {response.status_code} {response.reason or ''}".strip(),
                    body=(response.text or "")[:BODY_EXCERPT_LIMIT],
                    steps=steps,
                )
            state = next_state

        return PushResult(
            ok=True,
            uid=uid,
            url=resource_url,
            state=PushState.DONE,
            status_code=response.status_code if response is not None else None,
            reason="pushed",
            steps=steps,
        )


class CalendarDirectory:
    """CalDAV discovery for the admin surface: which calendars does the account have."""

    def __init__(self, config: CalendarTargetConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise ConfigurationError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
            timeout=self.config.timeout_seconds,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[CalendarInfo]:
        self._connect()
        calendars: list[CalendarInfo] = []
        for calendar in self._principal.calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            calendars.append(CalendarInfo(calendar_id=calendar_id, name=name, url=calendar_id))
        return calendars

    def has_calendar(self, url: str) -> bool:
        wanted = _normalize_calendar_url(url)
        return any(_normalize_calendar_url(info.url) == wanted for info in self.list_calendars())
