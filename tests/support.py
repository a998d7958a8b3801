"""
Test doubles and data builders shared by the test modules.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fieldsync.integrations.remote.base import RemoteStore
from fieldsync.models import Reading
from fieldsync.schemas.sync import RouteAssignmentGraph
from fieldsync.services.connectivity import ConnectivityState
from fieldsync.services.local_store import SqlAlchemyLocalStore

ONLINE = ConnectivityState(connected=True, internet_reachable=True)
OFFLINE = ConnectivityState(connected=False, internet_reachable=False)

IN_MEMORY_DATABASE = "sqlite+aiosqlite:///:memory:"


def make_route(index: int, residences: int = 2, weekday: str = "Segunda-feira") -> Dict[str, Any]:
    """Route payload as the backend returns it, ids derived from ``index``."""
    return {
        "id": f"route-{index}",
        "weekday": weekday,
        "street": {
            "id": f"street-{index}",
            "name": f"Rua {index}",
            "area": {"id": f"area-{index}", "name": f"Bairro {index}", "city": "Recife"},
            "residences": [
                {
                    "id": f"residence-{index}-{n}",
                    "number": str(100 + n),
                    "clients": [
                        {"id": f"client-{index}-{n}", "name": f"Cliente {index}.{n}"}
                    ],
                }
                for n in range(residences)
            ],
        },
    }


class FakeRemoteStore(RemoteStore):
    """
    Scripted backend recording every call.

    ``insert_failures`` maps a reading id to an exception raised on every
    attempt, or to a list of exceptions consumed one per attempt.
    ``remote_ids`` overrides the identifier answered for a reading.
    """

    def __init__(self, routes: Optional[List[Dict[str, Any]]] = None):
        self.routes = routes or []
        self.fetch_calls = 0
        self.fetch_errors: List[Exception] = []
        self.fetch_delay = 0.0
        self.insert_calls: List[str] = []
        self.insert_failures: Dict[str, Any] = {}
        self.remote_ids: Dict[str, Any] = {}
        self.insert_delay = 0.0
        self.closed = False

    async def fetch_route_graph(self, reader_id, cancel_token, weekday=None):
        self.fetch_calls += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)

        routes = [r for r in self.routes if weekday is None or r["weekday"] == weekday]
        return RouteAssignmentGraph.model_validate({"reader_id": reader_id, "routes": routes})

    async def insert_record(self, payload, cancel_token):
        self.insert_calls.append(payload.id)
        if self.insert_delay:
            await asyncio.sleep(self.insert_delay)

        failure = self.insert_failures.get(payload.id)
        if isinstance(failure, list):
            if failure:
                raise failure.pop(0)
        elif failure is not None:
            raise failure

        if payload.id in self.remote_ids:
            return self.remote_ids[payload.id]
        return f"remote-{payload.id}"

    async def close(self):
        self.closed = True


async def add_readings(local_store: SqlAlchemyLocalStore, count: int, **overrides) -> List[Reading]:
    """Store ``count`` pending readings with strictly increasing capture times."""
    base = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)
    readings = []
    for i in range(1, count + 1):
        fields = {
            "id": f"reading-{i:02d}",
            "residence_id": f"residence-{i}",
            "client_id": f"client-{i}",
            "reader_id": "reader-1",
            "value": str(1000 + i),
            "visit_status": "visited",
            "read_date": "2024-03-04",
            "read_time": "08:00:00",
            "created_at": base + timedelta(minutes=i),
        }
        fields.update(overrides)
        readings.append(await local_store.save_reading(Reading(**fields)))
    return readings
