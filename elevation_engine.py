"""
Elevation reconciliation engine.

Correlates approved elevation (audit) records and inventory snapshots against
authorization settings and folds them into per-setting statistics:

 - SettingsRegistry: named settings -> authorized directory groups
 - build_membership_index: resolve every group once, union per setting
 - classify_completions: authorized, approved, de-duplicated usage facts
 - compute_application_statistics: one result per setting, zero-use included

Pure and synchronous. Anomalies are reported as Diagnostic records through a
DiagnosticSink instead of being printed.
"""

import logging
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import (Any, Dict, FrozenSet, Iterable, Iterator, List, Mapping,
                    Optional, Protocol, Sequence, Set, Tuple)

# ---------- Constants ----------
TERMINAL_SUCCESS_STATUSES = frozenset({"finished", "approved"})
DEFAULT_TOP_N = 5

SOURCE_AUDIT = "audit"
SOURCE_INVENTORY = "inventory"


class InvariantViolation(RuntimeError):
    """Internal consistency failure; indicates a bug, not bad input."""


# ---------- Normalization helpers ----------
def normalize_username(raw: Any) -> str:
    """'CORP\\JDoe ' -> 'jdoe'."""
    if raw is None:
        return ""
    s = str(raw).strip()
    if "\\" in s:
        s = s.rsplit("\\", 1)[1]
    return s.casefold()


def normalize_key(raw: Any) -> str:
    return str(raw or "").strip().casefold()


# ---------- Data model ----------
@dataclass(frozen=True)
class AuthorizationSetting:
    name: str
    authorized_groups: Tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return normalize_key(self.name)


@dataclass(frozen=True)
class InventoryRecord:
    user: str
    application_name: str
    machine: str
    timestamp: datetime


@dataclass(frozen=True)
class AuditRecord:
    user: str
    application_name: str
    status: str
    timestamp: datetime
    groups_at_request_time: Tuple[str, ...] = ()
    machine: str = ""
    request_type: str = ""


@dataclass(frozen=True)
class CompletedUser:
    user: str
    setting_name: str
    timestamp: datetime
    occurrences: int = 1
    event_timestamps: Tuple[datetime, ...] = ()
    source: str = SOURCE_AUDIT
    corroborated: bool = False


@dataclass(frozen=True)
class ApplicationStatisticsResult:
    setting_name: str
    total_completions: int
    unique_user_count: int
    completions_by_date: Dict[date, int]
    top_users: List[Tuple[str, int]]
    unauthorized_attempts: int = 0
    authorized_user_count: int = 0
    first_completion: Optional[datetime] = None
    last_completion: Optional[datetime] = None


@dataclass(frozen=True)
class ReportingWindow:
    start: date
    end: date

    @classmethod
    def last_days(cls, days: int, today: Optional[date] = None) -> "ReportingWindow":
        end = today or date.today()
        return cls(start=end - timedelta(days=days), end=end)

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts.date() <= self.end


# ---------- Diagnostics ----------
@dataclass(frozen=True)
class Diagnostic:
    level: str
    code: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)


class DiagnosticSink:
    """Collects diagnostics; optionally mirrors them to a logger."""

    _LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.events: List[Diagnostic] = []
        self._logger = logger

    def emit(self, level: str, code: str, message: str, **context: Any) -> Diagnostic:
        diag = Diagnostic(level=level, code=code, message=message, context=context)
        self.events.append(diag)
        if self._logger is not None:
            self._logger.log(self._LEVELS.get(level, logging.INFO), "%s: %s", code, message)
        return diag

    def warning(self, code: str, message: str, **context: Any) -> Diagnostic:
        return self.emit("warning", code, message, **context)

    def info(self, code: str, message: str, **context: Any) -> Diagnostic:
        return self.emit("info", code, message, **context)

    def by_code(self, code: str) -> List[Diagnostic]:
        return [d for d in self.events if d.code == code]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.events if d.level == "warning"]


# ---------- Settings registry ----------
class SettingsRegistry:
    """Ordered, case-insensitive collection of settings. First definition wins."""

    def __init__(self, settings: Iterable[AuthorizationSetting] = (), sink: Optional[DiagnosticSink] = None):
        self._settings: Dict[str, AuthorizationSetting] = {}
        sink = sink if sink is not None else DiagnosticSink()
        for s in settings:
            key = s.key
            if not key:
                sink.warning("invalid_setting", "Setting without a name ignored")
                continue
            if key in self._settings:
                sink.warning("duplicate_setting",
                             f"Duplicate setting '{s.name}' ignored; keeping first definition "
                             f"'{self._settings[key].name}'",
                             setting=s.name)
                continue
            if not s.authorized_groups:
                sink.warning("empty_setting_groups",
                             f"Setting '{s.name}' has no authorized groups; it will report zero completions",
                             setting=s.name)
            self._settings[key] = s

    @classmethod
    def from_config(cls, items: Iterable[Mapping[str, Any]], sink: Optional[DiagnosticSink] = None) -> "SettingsRegistry":
        settings = []
        for item in items:
            groups = item.get("groups") or item.get("authorizedGroups") or item.get("adGroups") or []
            if isinstance(groups, str):
                groups = [groups]
            name = str(item.get("name") or "").strip()
            settings.append(AuthorizationSetting(name, tuple(str(g).strip() for g in groups if g is not None and str(g).strip())))
        return cls(settings, sink)

    def __iter__(self) -> Iterator[AuthorizationSetting]:
        return iter(self._settings.values())

    def __len__(self) -> int:
        return len(self._settings)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_key(name) in self._settings

    def get(self, name: str) -> Optional[AuthorizationSetting]:
        return self._settings.get(normalize_key(name))

    def names(self) -> List[str]:
        return [s.name for s in self._settings.values()]


# ---------- Membership index ----------
class GroupMembershipProvider(Protocol):
    def resolve_group_members(self, group_name: str) -> Set[str]:
        ...


class MembershipIndex(Mapping[str, FrozenSet[str]]):
    """Setting name -> normalized authorized usernames. Read-only."""

    def __init__(self, entries: Mapping[str, FrozenSet[str]], names: Mapping[str, str]):
        self._entries = dict(entries)
        self._names = dict(names)

    def __getitem__(self, setting_name: str) -> FrozenSet[str]:
        return self._entries[normalize_key(setting_name)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._names[k] for k in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def is_member(self, setting_name: str, user: str) -> bool:
        return normalize_username(user) in self._entries.get(normalize_key(setting_name), frozenset())


def _resolve_one(provider: GroupMembershipProvider, group: str) -> Tuple[Set[str], Optional[str]]:
    try:
        members = provider.resolve_group_members(group)
    except Exception as e:
        return set(), f"{type(e).__name__}: {e}"
    return {normalize_username(m) for m in (members or ()) if normalize_username(m)}, None


def build_membership_index(registry: SettingsRegistry,
                           provider: GroupMembershipProvider,
                           sink: Optional[DiagnosticSink] = None,
                           max_workers: int = 1) -> MembershipIndex:
    sink = sink if sink is not None else DiagnosticSink()

    # each distinct group (case-insensitive) is resolved once
    groups: Dict[str, str] = {}
    for s in registry:
        for g in s.authorized_groups:
            groups.setdefault(normalize_key(g), g)

    keys = list(groups)
    if max_workers > 1 and len(keys) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            results = list(pool.map(lambda k: _resolve_one(provider, groups[k]), keys))
    else:
        results = [_resolve_one(provider, groups[k]) for k in keys]

    resolved: Dict[str, FrozenSet[str]] = {}
    for key, (members, error) in zip(keys, results):
        if error:
            sink.warning("group_unresolved", f"Group '{groups[key]}' lookup failed ({error}); treated as empty",
                         group=groups[key])
        elif not members:
            sink.warning("group_unresolved", f"Group '{groups[key]}' not found or has no members",
                         group=groups[key])
        resolved[key] = frozenset(members)

    entries: Dict[str, FrozenSet[str]] = {}
    names: Dict[str, str] = {}
    for s in registry:
        union: Set[str] = set()
        for g in s.authorized_groups:
            union |= resolved[normalize_key(g)]
        entries[s.key] = frozenset(union)
        names[s.key] = s.name
    return MembershipIndex(entries, names)


# ---------- Application matching ----------
class MatchPolicy:
    """How an application name is mapped onto a setting name."""

    EXACT = "exact"
    PREFIX = "prefix"
    CONTAINS = "contains"
    CHOICES = (EXACT, PREFIX, CONTAINS)

    def __init__(self, mode: str = EXACT):
        mode = (mode or self.EXACT).strip().lower()
        if mode not in self.CHOICES:
            raise ValueError(f"Unknown match policy '{mode}' (expected one of {', '.join(self.CHOICES)})")
        self.mode = mode

    def matches(self, setting_key: str, app_key: str) -> bool:
        if not setting_key or not app_key:
            return False
        if self.mode == self.PREFIX:
            return app_key.startswith(setting_key)
        if self.mode == self.CONTAINS:
            return setting_key in app_key
        return app_key == setting_key

    def resolve(self, registry: SettingsRegistry, application_name: str) -> Optional[AuthorizationSetting]:
        app_key = normalize_key(application_name)
        exact = registry.get(app_key)
        if exact is not None or self.mode == self.EXACT:
            return exact
        for s in registry:
            if self.matches(s.key, app_key):
                return s
        return None


# ---------- Completion classifier ----------
@dataclass(frozen=True)
class ClassificationResult:
    completed: Tuple[CompletedUser, ...]
    unauthorized_attempts: Dict[str, int]
    unmatched_applications: Dict[str, int]
    skipped_status: int = 0
    out_of_window: int = 0

    @property
    def unmatched_count(self) -> int:
        return sum(self.unmatched_applications.values())


class _Accumulator:
    __slots__ = ("user", "setting_name", "timestamps", "source", "corroborated")

    def __init__(self, user: str, setting_name: str, source: str):
        self.user = user
        self.setting_name = setting_name
        self.timestamps: List[datetime] = []
        self.source = source
        self.corroborated = False

    def freeze(self) -> CompletedUser:
        stamps = tuple(sorted(self.timestamps))
        return CompletedUser(user=self.user, setting_name=self.setting_name, timestamp=stamps[0],
                             occurrences=len(stamps), event_timestamps=stamps,
                             source=self.source, corroborated=self.corroborated)


def classify_completions(audit_records: Sequence[AuditRecord],
                         index: MembershipIndex,
                         registry: SettingsRegistry,
                         inventory_records: Sequence[InventoryRecord] = (),
                         policy: Optional[MatchPolicy] = None,
                         window: Optional[ReportingWindow] = None,
                         success_statuses: FrozenSet[str] = TERMINAL_SUCCESS_STATUSES,
                         use_inventory: bool = True,
                         sink: Optional[DiagnosticSink] = None) -> ClassificationResult:
    policy = policy or MatchPolicy()
    sink = sink if sink is not None else DiagnosticSink()
    success = {normalize_key(s) for s in success_statuses}

    audit_facts: Dict[Tuple[str, str], _Accumulator] = {}
    # every (user, setting) with any audit trail, whatever its status
    audited: Set[Tuple[str, str]] = set()
    inventory_facts: Dict[Tuple[str, str], _Accumulator] = {}
    unauthorized: Dict[str, int] = defaultdict(int)
    unmatched: Counter = Counter()
    skipped_status = 0
    out_of_window = 0

    for rec in audit_records:
        setting = policy.resolve(registry, rec.application_name)
        user = normalize_username(rec.user)
        if setting is not None:
            audited.add((user, setting.key))
        if normalize_key(rec.status) not in success:
            skipped_status += 1
            continue
        if window is not None and not window.contains(rec.timestamp):
            out_of_window += 1
            continue
        if setting is None:
            unmatched[rec.application_name] += 1
            continue
        if not index.is_member(setting.name, user):
            unauthorized[setting.name] += 1
            continue
        acc = audit_facts.get((user, setting.key))
        if acc is None:
            acc = audit_facts[(user, setting.key)] = _Accumulator(user, setting.name, SOURCE_AUDIT)
        acc.timestamps.append(rec.timestamp)

    if use_inventory:
        for inv in inventory_records:
            if window is not None and not window.contains(inv.timestamp):
                out_of_window += 1
                continue
            setting = policy.resolve(registry, inv.application_name)
            if setting is None:
                continue
            user = normalize_username(inv.user)
            if not index.is_member(setting.name, user):
                continue
            pair = (user, setting.key)
            # audit wins; inventory only corroborates
            if pair in audit_facts:
                audit_facts[pair].corroborated = True
                continue
            if pair in audited:
                continue
            acc = inventory_facts.get(pair)
            if acc is None:
                acc = inventory_facts[pair] = _Accumulator(user, setting.name, SOURCE_INVENTORY)
            acc.timestamps.append(inv.timestamp)

    if unmatched:
        sink.info("unmatched_records",
                  f"{sum(unmatched.values())} records matched no setting ({len(unmatched)} distinct applications)",
                  applications=dict(unmatched))
    if skipped_status:
        sink.info("non_terminal_status", f"{skipped_status} audit records skipped (not finished/approved)")

    facts = [a.freeze() for a in audit_facts.values()] + [a.freeze() for a in inventory_facts.values()]
    facts.sort(key=lambda c: (normalize_key(c.setting_name), c.user))
    return ClassificationResult(completed=tuple(facts), unauthorized_attempts=dict(unauthorized),
                                unmatched_applications=dict(unmatched), skipped_status=skipped_status,
                                out_of_window=out_of_window)


# ---------- Statistics aggregator ----------
def compute_application_statistics(completed_users: Iterable[CompletedUser],
                                   registry: SettingsRegistry,
                                   unauthorized_attempts: Optional[Mapping[str, int]] = None,
                                   index: Optional[MembershipIndex] = None,
                                   top_n: int = DEFAULT_TOP_N) -> Dict[str, ApplicationStatisticsResult]:
    grouped: Dict[str, List[CompletedUser]] = defaultdict(list)
    for cu in completed_users:
        if cu.setting_name not in registry:
            raise InvariantViolation(f"CompletedUser references unknown setting '{cu.setting_name}'")
        grouped[normalize_key(cu.setting_name)].append(cu)

    unauthorized = {normalize_key(k): v for k, v in (unauthorized_attempts or {}).items()}
    results: Dict[str, ApplicationStatisticsResult] = {}
    for s in registry:
        facts = grouped.get(s.key, [])
        by_date: Counter = Counter()
        per_user: Counter = Counter()
        stamps: List[datetime] = []
        for cu in facts:
            events = cu.event_timestamps or (cu.timestamp,)
            for ts in events:
                by_date[ts.date()] += 1
            per_user[cu.user] += cu.occurrences
            stamps.extend(events)
        top = sorted(per_user.items(), key=lambda kv: (-kv[1], kv[0]))[:max(top_n, 0)]
        results[s.name] = ApplicationStatisticsResult(
            setting_name=s.name,
            total_completions=sum(cu.occurrences for cu in facts),
            unique_user_count=len({cu.user for cu in facts}),
            completions_by_date=dict(sorted(by_date.items())),
            top_users=top,
            unauthorized_attempts=unauthorized.get(s.key, 0),
            authorized_user_count=len(index[s.name]) if index is not None else 0,
            first_completion=min(stamps) if stamps else None,
            last_completion=max(stamps) if stamps else None,
        )
    return results


def densify_by_date(by_date: Mapping[date, int], window: ReportingWindow) -> List[Tuple[date, int]]:
    """Zero-filled daily series across the window (inclusive)."""
    out = []
    day = window.start
    while day <= window.end:
        out.append((day, by_date.get(day, 0)))
        day += timedelta(days=1)
    return out


# ---------- Pipeline ----------
@dataclass(frozen=True)
class ReconciliationReport:
    statistics: Dict[str, ApplicationStatisticsResult]
    classification: ClassificationResult
    index: MembershipIndex
    diagnostics: List[Diagnostic]


def run_reconciliation(registry: SettingsRegistry,
                       provider: GroupMembershipProvider,
                       audit_records: Sequence[AuditRecord],
                       inventory_records: Sequence[InventoryRecord] = (),
                       policy: Optional[MatchPolicy] = None,
                       window: Optional[ReportingWindow] = None,
                       use_inventory: bool = True,
                       top_n: int = DEFAULT_TOP_N,
                       max_workers: int = 1,
                       sink: Optional[DiagnosticSink] = None) -> ReconciliationReport:
    sink = sink if sink is not None else DiagnosticSink()
    if not audit_records:
        sink.info("no_audit_records", "No audit records available")
    index = build_membership_index(registry, provider, sink, max_workers=max_workers)
    classification = classify_completions(audit_records, index, registry, inventory_records,
                                          policy=policy, window=window, use_inventory=use_inventory, sink=sink)
    stats = compute_application_statistics(classification.completed, registry,
                                           classification.unauthorized_attempts, index, top_n=top_n)
    return ReconciliationReport(statistics=stats, classification=classification, index=index,
                                diagnostics=list(sink.events))

