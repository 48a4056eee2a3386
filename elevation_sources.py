"""
Record and group-membership sources for the elevation audit.

 - AdminByRequestClient: auditlog / inventory endpoints over requests
 - LiveRecordSource / CachedRecordSource: fetch (and cache) or load raw records
 - LiveAdGroupProvider / CachedGroupProvider: directory group members

Failures are logged and degrade to empty results; nothing here raises into
the engine.
"""

import json
import logging
import os
import re
import subprocess
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

import requests

from elevation_engine import AuditRecord, InventoryRecord, normalize_key

# ---------- Config ----------
DEFAULT_BASE_URL = "https://dc1api.adminbyrequest.com"
DEFAULT_TAKE = 100
DEFAULT_LOOKBACK_DAYS = 30
DEFAULT_TIMEOUT = 30

AUDIT_CACHE_FILE = "cached_auditlogs.json"
INVENTORY_CACHE_FILE = "cached_inventory.json"
GROUPS_CACHE_FILE = "cached_groups.json"

AD_NOT_FOUND_MARKER = "cannot find an object with identity"
FRACTION_RE = re.compile(r"(\.\d+)(?=[+-]\d\d:\d\d$|$)")


# ---------- JSON cache ----------
def save_json_cache(path: str, data: Any):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=False)


def load_json_cache(path: str) -> Any:
    """Returns [] when the file is missing or unreadable."""
    if not os.path.exists(path):
        logging.error("Cache file not found: %s", path)
        return []
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as e:
        logging.error("JSON parse error for cache %s: %s", path, e)
    except OSError as e:
        logging.error("Error reading cache file %s: %s", path, e)
    return []


def extract_list(obj: Any, prefer_keys=("items", "data", "results", "auditlog", "inventory")) -> List[Dict]:
    if isinstance(obj, list):
        return obj
    if isinstance(obj, dict):
        for k in prefer_keys:
            if k in obj and isinstance(obj[k], list):
                return obj[k]
        for v in obj.values():
            if isinstance(v, list):
                return v
    return []


# ---------- Field mapping ----------
def parse_timestamp(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    s = str(raw).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    # .NET emits 7 fractional digits; fromisoformat before 3.11 wants exactly 3 or 6
    s = FRACTION_RE.sub(lambda m: "." + (m.group(1)[1:] + "000000")[:6], s)
    try:
        ts = datetime.fromisoformat(s)
    except ValueError:
        try:
            ts = datetime.strptime(s[:10], "%Y-%m-%d")
        except ValueError:
            return None
    # naive timestamps from the API are UTC
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _account(user: Any) -> str:
    if isinstance(user, dict):
        return str(user.get("account") or user.get("username") or user.get("samAccountName") or "").strip()
    return str(user or "").strip()


def _app_name(app: Any) -> str:
    if isinstance(app, dict):
        return str(app.get("name") or app.get("file") or "").strip()
    return str(app or "").strip()


def _groups(entry: Dict) -> tuple:
    user = entry.get("user")
    raw = entry.get("groups") or (user.get("groups") if isinstance(user, dict) else None) or []
    out = []
    for g in raw if isinstance(raw, list) else [raw]:
        name = g.get("name") if isinstance(g, dict) else g
        if name:
            out.append(str(name).strip())
    return tuple(out)


def sanitize_audit_entries(raw: Any) -> List[AuditRecord]:
    """Map auditlog payload items to AuditRecords.

    An admin session lists what it elevated under elevatedApplications; each
    application becomes its own record.
    """
    records = []
    dropped = 0
    for e in extract_list(raw):
        if not isinstance(e, dict):
            dropped += 1
            continue
        user = _account(e.get("user"))
        ts = parse_timestamp(e.get("startTimeUTC") or e.get("requestTimeUTC") or e.get("startTime")
                             or e.get("requestTime") or e.get("timestamp"))
        apps = [_app_name(e.get("application"))]
        apps += [_app_name(a) for a in (e.get("elevatedApplications") or [])]
        apps = [a for a in apps if a]
        if not apps and e.get("applicationName"):
            apps = [str(e["applicationName"]).strip()]
        if not user or not apps or ts is None:
            dropped += 1
            continue
        computer = e.get("computer")
        machine = str(computer.get("name") or "") if isinstance(computer, dict) else str(computer or "")
        for app in dict.fromkeys(apps):
            records.append(AuditRecord(
                user=user,
                application_name=app,
                status=str(e.get("status") or "").strip(),
                timestamp=ts,
                groups_at_request_time=_groups(e),
                machine=machine,
                request_type=str(e.get("type") or "").strip(),
            ))
    if dropped:
        logging.warning("Dropped %d audit entries without user, application or timestamp", dropped)
    return records


def sanitize_inventory_entries(raw: Any) -> List[InventoryRecord]:
    """Map inventory payload items (one per machine) to one record per installed software."""
    records = []
    dropped = 0
    for e in extract_list(raw):
        if not isinstance(e, dict):
            dropped += 1
            continue
        user = _account(e.get("user"))
        machine = str(e.get("name") or e.get("computerName") or "").strip()
        ts = parse_timestamp(e.get("inventoryDate") or e.get("lastUpdated") or e.get("timestamp"))
        software = e.get("software")
        if software is None and e.get("applicationName"):
            software = [{"name": e["applicationName"]}]
        if not user or ts is None or not software:
            dropped += 1
            continue
        for sw in software:
            name = _app_name(sw)
            if name:
                records.append(InventoryRecord(user=user, application_name=name, machine=machine, timestamp=ts))
    if dropped:
        logging.warning("Dropped %d inventory entries without user, timestamp or software", dropped)
    return records


# ---------- Admin By Request API ----------
class AdminByRequestClient:
    def __init__(self, api_key: str,
                 base_url: str = DEFAULT_BASE_URL,
                 session: Optional[requests.Session] = None,
                 take: int = DEFAULT_TAKE,
                 start_date: Optional[date] = None,
                 end_date: Optional[date] = None,
                 status: str = "Finished",
                 timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.headers = {"apikey": api_key, "Accept": "application/json"}
        self.take = take
        self.end_date = end_date or date.today()
        self.start_date = start_date or self.end_date - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        self.status = status
        self.timeout = timeout

    def audit_params(self) -> Dict[str, str]:
        return {
            "take": str(self.take),
            "wantgroups": "1",
            "status": self.status,
            "startdate": self.start_date.strftime("%Y-%m-%d"),
            "enddate": self.end_date.strftime("%Y-%m-%d"),
        }

    def _get(self, endpoint: str, params: Mapping[str, str], label: str) -> List[Dict]:
        url = f"{self.base_url}/{endpoint}"
        try:
            response = self.session.get(url, headers=self.headers, params=dict(params), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logging.error("Request error while fetching %s: %s", label, e)
            return []
        if not response.ok:
            logging.error("Failed to fetch %s. Status Code: %s (%s)", label, response.status_code, response.reason)
            logging.error("Response: %s", response.text[:500])
            return []
        try:
            return extract_list(response.json())
        except ValueError as e:
            logging.error("JSON decode error while fetching %s: %s", label, e)
            return []

    def fetch_audit_logs(self, params: Optional[Mapping[str, str]] = None) -> List[Dict]:
        return self._get("auditlog", params or self.audit_params(), "audit logs")

    def fetch_inventory(self) -> List[Dict]:
        return self._get("inventory", {"take": str(self.take), "wantgroups": "1"}, "inventory data")


# ---------- Record sources ----------
class LiveRecordSource:
    """Fetches from the API; writes the raw payloads to cache_dir when given."""

    def __init__(self, client: AdminByRequestClient, cache_dir: Optional[str] = None):
        self.client = client
        self.cache_dir = cache_dir

    def _cache(self, filename: str, raw: List[Dict]):
        if self.cache_dir and raw:
            path = os.path.join(self.cache_dir, filename)
            save_json_cache(path, raw)
            logging.info("Cached %d raw records to %s", len(raw), path)

    def fetch_or_load_audit_records(self) -> List[AuditRecord]:
        raw = self.client.fetch_audit_logs()
        self._cache(AUDIT_CACHE_FILE, raw)
        return sanitize_audit_entries(raw)

    def fetch_or_load_inventory_records(self) -> List[InventoryRecord]:
        raw = self.client.fetch_inventory()
        self._cache(INVENTORY_CACHE_FILE, raw)
        return sanitize_inventory_entries(raw)


class CachedRecordSource:
    def __init__(self, cache_dir: str):
        self.audit_path = os.path.join(cache_dir, AUDIT_CACHE_FILE)
        self.inventory_path = os.path.join(cache_dir, INVENTORY_CACHE_FILE)

    def fetch_or_load_audit_records(self) -> List[AuditRecord]:
        records = sanitize_audit_entries(load_json_cache(self.audit_path))
        logging.info("Loaded %d cached audit log records from %s", len(records), self.audit_path)
        return records

    def fetch_or_load_inventory_records(self) -> List[InventoryRecord]:
        records = sanitize_inventory_entries(load_json_cache(self.inventory_path))
        logging.info("Loaded %d cached inventory records from %s", len(records), self.inventory_path)
        return records


# ---------- Group membership ----------
Runner = Callable[..., subprocess.CompletedProcess]


class LiveAdGroupProvider:
    """Recursive AD group lookup through PowerShell's Get-ADGroupMember."""

    def __init__(self, runner: Runner = subprocess.run, timeout: int = 60, executable: str = "powershell"):
        self.runner = runner
        self.timeout = timeout
        self.executable = executable
        self.resolved: Dict[str, List[str]] = {}

    def build_command(self, group_name: str) -> List[str]:
        # single quotes inside a PowerShell literal are escaped by doubling
        literal = group_name.replace("'", "''")
        cmd = f"Get-ADGroupMember -Identity '{literal}' -Recursive | Select-Object -ExpandProperty SamAccountName"
        return [self.executable, "-NoProfile", "-Command", cmd]

    def resolve_group_members(self, group_name: str) -> Set[str]:
        try:
            proc = self.runner(self.build_command(group_name), capture_output=True, text=True,
                               encoding="utf-8", timeout=self.timeout)
        except (OSError, subprocess.SubprocessError) as e:
            logging.error("Error querying AD group '%s': %s", group_name, e)
            return set()
        stdout = (proc.stdout or "").strip()
        if stdout:
            members = [line.strip() for line in stdout.splitlines() if line.strip()]
            self.resolved[group_name] = members
            return set(members)
        err = (proc.stderr or "").strip()
        if AD_NOT_FOUND_MARKER in err.lower():
            logging.warning("AD group '%s' not found in AD.", group_name)
        elif err:
            logging.error("Failed to get AD group details for '%s'. Error: %s", group_name, err)
        else:
            logging.warning("AD group '%s' has no members.", group_name)
        return set()


class StaticGroupProvider:
    """Serves memberships from an in-memory mapping."""

    def __init__(self, memberships: Mapping[str, Iterable[str]]):
        self._groups = {normalize_key(g): set(m or ()) for g, m in memberships.items()}

    def resolve_group_members(self, group_name: str) -> Set[str]:
        members = self._groups.get(normalize_key(group_name))
        if members is None:
            logging.warning("Group '%s' not present in cached snapshot.", group_name)
            return set()
        return set(members)


class CachedGroupProvider(StaticGroupProvider):
    def __init__(self, path: str):
        data = load_json_cache(path)
        if not isinstance(data, dict):
            logging.error("Cached group snapshot %s is not an object; ignoring", path)
            data = {}
        super().__init__(data)
        logging.info("Loaded %d cached groups from %s", len(data), path)


def save_group_snapshot(path: str, memberships: Mapping[str, Iterable[str]]):
    save_json_cache(path, {g: sorted(set(m)) for g, m in memberships.items()})
