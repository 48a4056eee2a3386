"""Tests for record and group-membership sources."""

import json
import subprocess
from datetime import date, datetime, timezone

import requests

from elevation_sources import (AUDIT_CACHE_FILE, INVENTORY_CACHE_FILE, AdminByRequestClient,
                               CachedGroupProvider, CachedRecordSource, LiveAdGroupProvider,
                               LiveRecordSource, load_json_cache, parse_timestamp,
                               sanitize_audit_entries, sanitize_inventory_entries,
                               save_group_snapshot)

AUDIT_PAYLOAD = [
    {
        "id": 1,
        "type": "Run As Admin",
        "status": "Finished",
        "user": {"account": "CORP\\bob", "fullName": "Bob B"},
        "computer": {"name": "PC01"},
        "application": {"name": "7-Zip", "file": "7zFM.exe"},
        "startTimeUTC": "2024-01-05T10:00:00Z",
        "groups": [{"name": "IT-Admins"}],
    },
    {
        "id": 2,
        "type": "Admin Session",
        "status": "Finished",
        "user": {"account": "carol"},
        "computer": {"name": "PC02"},
        "application": None,
        "elevatedApplications": [{"name": "Wireshark"}, {"name": "Putty"}, {"name": "Wireshark"}],
        "startTimeUTC": "2024-01-06T09:30:00",
    },
    {"id": 3, "status": "Finished", "user": {"account": ""}, "application": {"name": "7-Zip"}},
]

INVENTORY_PAYLOAD = [
    {
        "name": "PC01",
        "user": {"account": "bob"},
        "inventoryDate": "2024-01-04",
        "software": [{"name": "7-Zip", "version": "23.01"}, {"name": "Notepad++"}],
    },
    {"name": "PC03", "user": {"account": "dave"}, "inventoryDate": "2024-01-04", "software": []},
]


class FakeResponse:
    def __init__(self, payload=None, status_code=200, reason="OK", text=""):
        self._payload = payload
        self.status_code = status_code
        self.reason = reason
        self.text = text
        self.ok = 200 <= status_code < 300

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.requests.append((url, headers, params))
        response = self.responses[url.rsplit("/", 1)[1]]
        if isinstance(response, Exception):
            raise response
        return response


def test_sanitize_audit_entries() -> None:
    records = sanitize_audit_entries(AUDIT_PAYLOAD)

    assert [(r.user, r.application_name) for r in records] == [
        ("CORP\\bob", "7-Zip"), ("carol", "Wireshark"), ("carol", "Putty")]
    first = records[0]
    assert first.timestamp == datetime(2024, 1, 5, 10, tzinfo=timezone.utc)
    assert first.groups_at_request_time == ("IT-Admins",)
    assert first.machine == "PC01"
    assert records[1].request_type == "Admin Session"


def test_sanitize_inventory_entries() -> None:
    records = sanitize_inventory_entries({"items": INVENTORY_PAYLOAD})

    assert [(r.user, r.application_name, r.machine) for r in records] == [
        ("bob", "7-Zip", "PC01"), ("bob", "Notepad++", "PC01")]


def test_parse_timestamp_variants() -> None:
    assert parse_timestamp("2024-01-05").date() == date(2024, 1, 5)
    assert parse_timestamp("garbage") is None
    assert parse_timestamp(None) is None


def test_client_fetches_audit_with_params() -> None:
    session = FakeSession({"auditlog": FakeResponse(AUDIT_PAYLOAD)})
    client = AdminByRequestClient("secret", session=session, start_date=date(2024, 1, 1), end_date=date(2024, 1, 31))

    raw = client.fetch_audit_logs()

    assert len(raw) == 3
    url, headers, params = session.requests[0]
    assert url == "https://dc1api.adminbyrequest.com/auditlog"
    assert headers["apikey"] == "secret"
    assert params["startdate"] == "2024-01-01"
    assert params["enddate"] == "2024-01-31"
    assert params["status"] == "Finished"


def test_client_soft_fails(caplog) -> None:
    session = FakeSession({
        "auditlog": FakeResponse(status_code=401, reason="Unauthorized", text="bad key"),
        "inventory": requests.exceptions.ConnectionError("down"),
    })
    client = AdminByRequestClient("secret", session=session)

    assert client.fetch_audit_logs() == []
    assert client.fetch_inventory() == []
    assert "Status Code: 401" in caplog.text


def test_client_handles_bad_json() -> None:
    session = FakeSession({"inventory": FakeResponse(ValueError("no json"))})
    assert AdminByRequestClient("k", session=session).fetch_inventory() == []


def test_live_source_writes_cache_then_cached_source_reads_it(tmp_path) -> None:
    session = FakeSession({"auditlog": FakeResponse(AUDIT_PAYLOAD), "inventory": FakeResponse(INVENTORY_PAYLOAD)})
    live = LiveRecordSource(AdminByRequestClient("k", session=session), cache_dir=str(tmp_path))

    live_audit = live.fetch_or_load_audit_records()
    live_inventory = live.fetch_or_load_inventory_records()

    assert (tmp_path / AUDIT_CACHE_FILE).exists()
    assert (tmp_path / INVENTORY_CACHE_FILE).exists()
    cached = CachedRecordSource(str(tmp_path))
    assert cached.fetch_or_load_audit_records() == live_audit
    assert cached.fetch_or_load_inventory_records() == live_inventory


def test_missing_cache_is_empty(tmp_path) -> None:
    source = CachedRecordSource(str(tmp_path / "nowhere"))
    assert source.fetch_or_load_audit_records() == []
    assert load_json_cache(str(tmp_path / "nope.json")) == []


def _runner(stdout="", stderr="", exc=None):
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        if exc is not None:
            raise exc
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout, stderr=stderr)

    run.calls = calls
    return run


def test_live_ad_provider_parses_members() -> None:
    runner = _runner(stdout="bob\r\ncarol\r\n\r\n")
    provider = LiveAdGroupProvider(runner=runner)

    assert provider.resolve_group_members("IT Admins") == {"bob", "carol"}
    assert runner.calls[0][:3] == ["powershell", "-NoProfile", "-Command"]
    assert "-Identity 'IT Admins' -Recursive" in runner.calls[0][3]
    assert provider.resolved == {"IT Admins": ["bob", "carol"]}


def test_live_ad_provider_escapes_quotes() -> None:
    command = LiveAdGroupProvider().build_command("O'Brien Team")
    assert "'O''Brien Team'" in command[3]


def test_live_ad_provider_not_found(caplog) -> None:
    runner = _runner(stderr="Get-ADGroupMember : Cannot find an object with identity: 'Ghost'")
    assert LiveAdGroupProvider(runner=runner).resolve_group_members("Ghost") == set()
    assert "not found in AD" in caplog.text


def test_live_ad_provider_process_error() -> None:
    runner = _runner(exc=FileNotFoundError("powershell"))
    assert LiveAdGroupProvider(runner=runner).resolve_group_members("IT-Admins") == set()


def test_cached_group_provider(tmp_path) -> None:
    path = tmp_path / "groups.json"
    save_group_snapshot(str(path), {"IT-Admins": ["carol", "bob", "bob"]})

    assert json.loads(path.read_text(encoding="utf-8")) == {"IT-Admins": ["bob", "carol"]}
    provider = CachedGroupProvider(str(path))
    assert provider.resolve_group_members("it-admins") == {"bob", "carol"}
    assert provider.resolve_group_members("Unknown") == set()


def test_parse_timestamp_keeps_time_with_long_fraction() -> None:
    ts = parse_timestamp("2024-01-05T10:15:30.1234567Z")
    assert ts == datetime(2024, 1, 5, 10, 15, 30, 123456, tzinfo=timezone.utc)
    assert parse_timestamp("2024-01-05T10:15:30.5").microsecond == 500000
