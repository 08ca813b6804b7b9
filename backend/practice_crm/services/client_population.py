"""
Client population sources.

Segments never own client data. The registry asks a population source for
the current client records (plain dicts keyed by segment field ids, plus
"id") whenever it recounts a segment.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

import pymysql

from ..core.config import Settings
from ..core.logging_config import get_logger
from .segment_fields import CLIENT_FIELDS, FieldRegistry

logger = get_logger(__name__)


class ClientPopulation(Protocol):
    def records(self) -> Iterable[Mapping[str, Any]]:
        ...


class InMemoryClientPopulation:
    """Snapshot-based population; records() hands out the snapshot taken at call time."""

    def __init__(self, records: Optional[Iterable[Mapping[str, Any]]] = None):
        self._lock = threading.Lock()
        self._records: List[Mapping[str, Any]] = list(records or [])

    def records(self) -> List[Mapping[str, Any]]:
        with self._lock:
            return list(self._records)

    def replace(self, records: Iterable[Mapping[str, Any]]) -> None:
        snapshot = list(records)
        with self._lock:
            self._records = snapshot
        logger.info(f"Client population replaced: {len(snapshot)} records")

    def add(self, record: Mapping[str, Any]) -> None:
        with self._lock:
            self._records.append(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


def _get_connection(settings: Settings):
    return pymysql.connect(
        host=settings.DB_HOST,
        user=settings.DB_USER,
        password=settings.DB_PASSWORD,
        database=settings.DB_NAME,
        port=int(settings.DB_PORT),
        charset=settings.DB_CHARSET,
        cursorclass=pymysql.cursors.DictCursor,
    )


def _split_list(value: Any) -> Any:
    """Set-valued columns are stored comma separated ("anxiety,ptsd")."""
    if value is None or isinstance(value, (list, tuple)):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


def _to_bool(value: Any) -> Any:
    # TINYINT(1) comes back as 0/1
    if isinstance(value, int) and not isinstance(value, bool) and value in (0, 1):
        return bool(value)
    return value


def _to_number(value: Any) -> Any:
    # DECIMAL columns come back as decimal.Decimal
    if value is None or isinstance(value, (bool, int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def normalize_row(row: Mapping[str, Any], fields: FieldRegistry = CLIENT_FIELDS) -> Dict[str, Any]:
    """Convert one DB row into an evaluator record; unknown columns pass through untouched."""
    record = dict(row)
    for descriptor in fields:
        if descriptor.field_id not in record:
            continue
        raw = record[descriptor.field_id]
        if descriptor.multi:
            record[descriptor.field_id] = _split_list(raw)
        elif descriptor.value_type == "boolean":
            record[descriptor.field_id] = _to_bool(raw)
        elif descriptor.value_type == "number":
            record[descriptor.field_id] = _to_number(raw)
    return record


class MySQLClientPopulation:
    """
    Reads client facts from a MySQL view (one row per client).

    The view is expected to expose an `id` column plus one column per segment
    field id (status, lastSession, diagnoses, ...). Columns missing from the
    view simply make conditions on those fields fail for every record.
    """

    def __init__(self, settings: Settings, fields: FieldRegistry = CLIENT_FIELDS):
        self.settings = settings
        self.fields = fields
        self.view = settings.CLIENT_VIEW
        if not self.view.replace("_", "").replace(".", "").isalnum():
            raise ValueError(f"invalid client view name: {self.view!r}")

    def records(self) -> List[Dict[str, Any]]:
        sql = f"SELECT * FROM {self.view}"
        conn = _get_connection(self.settings)
        try:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = list(cur.fetchall() or [])
        finally:
            conn.close()
        logger.info(f"Loaded {len(rows)} client records from {self.view}")
        return [normalize_row(r, self.fields) for r in rows]


# Small demo population used when CLIENT_SOURCE=memory
DEMO_CLIENTS: List[Dict[str, Any]] = [
    {
        "id": 1001, "status": "active", "lastSession": 12, "joinDate": 400, "sessionCount": 24,
        "diagnoses": ["anxiety"], "gender": "female", "insuranceType": "private",
        "packageType": "premium", "referralSource": "doctor", "therapist": "Dr. Rivera",
        "sessionFrequency": 4, "hasFeedback": True, "hasCompletedForms": True,
        "tags": ["vip"], "lifetimeValue": 6200,
    },
    {
        "id": 1002, "status": "active", "lastSession": 45, "joinDate": 20, "sessionCount": 3,
        "diagnoses": ["depression", "ptsd"], "gender": "male", "insuranceType": "medicaid",
        "packageType": "standard", "referralSource": "google", "therapist": "Dr. Chen",
        "sessionFrequency": 2, "hasFeedback": False, "hasCompletedForms": False,
        "tags": [], "lifetimeValue": 450,
    },
    {
        "id": 1003, "status": "inactive", "lastSession": 120, "joinDate": 900, "sessionCount": 18,
        "diagnoses": ["adhd"], "gender": "non-binary", "insuranceType": "self-pay",
        "packageType": "intensive", "referralSource": "friend", "therapist": "Dr. Rivera",
        "sessionFrequency": 0, "hasFeedback": True, "hasCompletedForms": True,
        "tags": ["re-engage"], "lifetimeValue": 3100,
    },
    {
        "id": 1004, "status": "pending", "lastSession": 5, "joinDate": 6, "sessionCount": 1,
        "diagnoses": [], "gender": "female", "insuranceType": "medicare",
        "packageType": "standard", "referralSource": "insurance", "therapist": "Dr. Okafor",
        "sessionFrequency": 1, "hasFeedback": False, "hasCompletedForms": True,
        "tags": ["new"], "lifetimeValue": 150,
    },
]


def build_population(settings: Settings) -> ClientPopulation:
    if settings.CLIENT_SOURCE == "mysql":
        logger.info(f"Client population source: mysql view={settings.CLIENT_VIEW}")
        return MySQLClientPopulation(settings)
    if settings.CLIENT_SOURCE != "memory":
        raise ValueError(f"unknown CLIENT_SOURCE: {settings.CLIENT_SOURCE!r}")
    logger.info(f"Client population source: memory ({len(DEMO_CLIENTS)} demo records)")
    return InMemoryClientPopulation(DEMO_CLIENTS)
