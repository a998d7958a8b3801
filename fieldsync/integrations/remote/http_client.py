"""
REST client for a PostgREST-style backend.

Routes are read with a single nested select; readings are inserted one row
per request. Transport failures are translated into the sync error taxonomy
so the retry layer can tell transient faults from rejections.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import aiohttp
from pydantic import ValidationError

from fieldsync.core.cancellation import CancelToken
from fieldsync.core.errors import (
    RemoteAuthError, RemoteProtocolError, RemoteValidationError, SyncError,
    TransientNetworkError
)
from fieldsync.integrations.remote.base import RemoteStore
from fieldsync.schemas.sync import ReadingPayload, RouteAssignmentGraph, RoutePayload

logger = logging.getLogger(__name__)

ROUTE_GRAPH_SELECT = (
    "id,weekday,"
    "street:streets(id,name,"
    "area:areas(id,name,city),"
    "residences(id,number,clients(id,name,document,phone,email)))"
)

# Postgres unique_violation: the row is already there from an earlier attempt
UNIQUE_VIOLATION_CODE = "23505"


def error_for_status(status: int, body: Any, operation: str) -> SyncError:
    """
    Map an HTTP error response to a sync error.

    Args:
        status: HTTP status code
        body: Decoded response body (dict from PostgREST, or raw text)
        operation: Label used in the error message

    Returns:
        Error instance to raise
    """
    details = body if isinstance(body, dict) else {'body': body}
    code = details.get('code') if isinstance(details, dict) else None
    message = details.get('message') if isinstance(details, dict) else None
    text = f"{operation} failed with HTTP {status}: {message or body}"

    if status in (401, 403):
        return RemoteAuthError(text, code=code or str(status), details=details)
    if status in (408, 425, 429) or status >= 500:
        return TransientNetworkError(text, code=code or str(status), details=details)
    if 400 <= status < 500:
        return RemoteValidationError(text, code=code or str(status), details=details)
    return RemoteProtocolError(text, code=code or str(status), details=details)


class RestRemoteStore(RemoteStore):
    """RemoteStore speaking to the backend's REST interface with aiohttp."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        routes_resource: str = "routes",
        readings_resource: str = "readings",
        transport_timeout: float = 120.0,
        http_session: Optional[aiohttp.ClientSession] = None
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.api_key = api_key
        self.routes_resource = routes_resource
        self.readings_resource = readings_resource
        self.transport_timeout = transport_timeout
        self._http_session = http_session
        self._owns_session = http_session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            headers = {
                'User-Agent': 'fieldsync/1.0',
                'Accept': 'application/json',
                'Content-Type': 'application/json',
                'Cache-Control': 'no-cache'
            }
            if self.api_key:
                headers['apikey'] = self.api_key
                headers['Authorization'] = f"Bearer {self.api_key}"

            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.transport_timeout),
                headers=headers
            )
            self._owns_session = True
        return self._http_session

    async def close(self) -> None:
        if self._owns_session and self._http_session and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    def _url(self, resource: str) -> str:
        return urljoin(self.base_url, f"rest/v1/{resource}")

    async def _request(
        self,
        method: str,
        resource: str,
        operation: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        """Issue one request and return the decoded JSON body."""
        session = await self._get_session()
        url = self._url(resource)

        try:
            async with session.request(
                method, url, params=params, json=json_body, headers=headers
            ) as response:
                raw = await response.text()
                try:
                    body = json.loads(raw) if raw else None
                except ValueError:
                    body = raw

                if response.status >= 400:
                    raise error_for_status(response.status, body, operation)
                return body

        except SyncError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"{operation} timed out", original_exception=e) from e
        except aiohttp.ClientPayloadError as e:
            # Stream ended before the body was complete
            raise TransientNetworkError(
                f"{operation} failed: premature close ({e})", original_exception=e
            ) from e
        except aiohttp.ClientConnectionError as e:
            raise TransientNetworkError(f"{operation} failed: {e}", original_exception=e) from e
        except aiohttp.ClientResponseError as e:
            raise error_for_status(e.status, e.message, operation) from e

    async def fetch_route_graph(
        self,
        reader_id: str,
        cancel_token: CancelToken,
        weekday: Optional[str] = None
    ) -> RouteAssignmentGraph:
        cancel_token.raise_if_cancelled()

        params = {
            'select': ROUTE_GRAPH_SELECT,
            'reader_id': f"eq.{reader_id}",
        }
        if weekday:
            params['weekday'] = f"eq.{weekday}"

        body = await cancel_token.guard(
            self._request('GET', self.routes_resource, "Route graph fetch", params=params)
        )

        if body is None:
            body = []
        if not isinstance(body, list):
            raise RemoteProtocolError(
                f"Route graph fetch returned {type(body).__name__}, expected a list"
            )

        try:
            routes: List[RoutePayload] = [RoutePayload.model_validate(item) for item in body]
        except ValidationError as e:
            raise RemoteProtocolError(
                f"Route graph for reader {reader_id} is malformed: {e}",
                original_exception=e
            ) from e

        logger.info(f"Retrieved {len(routes)} routes for reader {reader_id}")
        return RouteAssignmentGraph(reader_id=reader_id, routes=routes)

    async def insert_record(self, payload: ReadingPayload, cancel_token: CancelToken) -> str:
        cancel_token.raise_if_cancelled()

        try:
            body = await cancel_token.guard(
                self._request(
                    'POST',
                    self.readings_resource,
                    f"Reading insert (ID: {payload.id})",
                    json_body=[payload.model_dump()],
                    headers={'Prefer': 'return=representation'}
                )
            )
        except RemoteValidationError as e:
            if e.code == UNIQUE_VIOLATION_CODE:
                # An earlier attempt landed but its response was lost
                logger.info(f"Reading {payload.id} already present on the backend")
                return payload.id
            raise

        rows = body if isinstance(body, list) else [body]
        if not rows or not isinstance(rows[0], dict) or rows[0].get('id') in (None, ""):
            raise RemoteProtocolError(
                f"Reading insert (ID: {payload.id}) returned no identifier",
                details={'body': body}
            )
        return str(rows[0]['id'])
