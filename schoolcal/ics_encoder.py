from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from icalendar import Alarm as ICAlarm
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import vCalAddress, vText

from schoolcal.models import DomainRecord, OrganizerConfig

PRODID = "-//schoolcal//Portal Calendar Sync//EN"


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date() if value.tzinfo else value.date()
    return value


def _as_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def _add_times(vevent: ICEvent, record: DomainRecord) -> None:
    if record.start is None:
        return
    if record.all_day:
        start_day = _as_date(record.start)
        last_day = _as_date(record.end) if record.end is not None else start_day
        # DTEND is exclusive for date values.
        vevent.add("DTSTART", start_day)
        vevent.add("DTEND", max(last_day, start_day) + timedelta(days=1))
        return
    start = _as_datetime(record.start)
    end = _as_datetime(record.end) if record.end is not None else start + timedelta(hours=1)
    if end < start:
        end = start
    vevent.add("DTSTART", start)
    vevent.add("DTEND", end)


def encode_record(
    record: DomainRecord,
    organizer: OrganizerConfig | None = None,
    reminders: list[int] | None = None,
    *,
    calendar_name: str = "",
    uid: str | None = None,
    stamp: datetime | None = None,
) -> str:
    """Serialize one record as a VCALENDAR holding a single VEVENT.

    ``uid`` overrides the record uid (used for prefixed remote uids). ``reminders`` are
    minutes before start; each becomes a DISPLAY alarm.
    """
    calendar_obj = ICalendar()
    calendar_obj.add("PRODID", PRODID)
    calendar_obj.add("VERSION", "2.0")
    if calendar_name:
        calendar_obj.add("X-WR-CALNAME", calendar_name)

    vevent = ICEvent()
    vevent.add("UID", uid or record.uid)
    if stamp is not None:
        vevent.add("DTSTAMP", _as_datetime(stamp))
    vevent.add("SUMMARY", record.summary or "")
    if record.description:
        vevent.add("DESCRIPTION", record.description)
    if record.location:
        vevent.add("LOCATION", record.location)
    _add_times(vevent, record)

    if organizer is not None and organizer.email:
        address = vCalAddress(f"mailto:{organizer.email}")
        address.params["cn"] = vText(organizer.cn or organizer.email)
        vevent["ORGANIZER"] = address

    for minutes in reminders or []:
        alarm = ICAlarm()
        alarm.add("ACTION", "DISPLAY")
        alarm.add("DESCRIPTION", record.summary or "Reminder")
        alarm.add("TRIGGER", timedelta(minutes=-int(minutes)))
        vevent.add_component(alarm)

    calendar_obj.add_component(vevent)
    return calendar_obj.to_ical().decode("utf-8")
