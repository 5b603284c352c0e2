"""Event and data sources polled by trigger monitors."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from ..conditions import lookup
from ..errors import ConfigurationError, InfrastructureError

logger = logging.getLogger(__name__)


class EventSource(Protocol):
    """Provides new external events, each carrying a stable ``id``."""

    async def fetch(self, cursor: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return events newer than ``cursor`` (all recent events if None)."""


class DataSource(Protocol):
    """Provides a snapshot that condition-poll triggers evaluate."""

    async def snapshot(self) -> Dict[str, Any]:
        """Return current data."""


class HttpEventSource:
    """Polls a JSON endpoint that returns a list of events.

    The cursor is sent as the ``cursor_param`` query parameter. ``items_path``
    selects the list inside an object response.
    """

    def __init__(
        self,
        url: str,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Mapping[str, str]] = None,
        items_path: Optional[str] = None,
        cursor_param: str = "since",
        timeout: float = 10.0,
    ) -> None:
        self.url = url
        self._client = client
        self._headers = dict(headers or {})
        self._items_path = items_path
        self._cursor_param = cursor_param
        self._timeout = timeout

    async def _get(self, params: Dict[str, str]) -> Any:
        try:
            if self._client is not None:
                response = await self._client.get(self.url, params=params, headers=self._headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self.url, params=params, headers=self._headers)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise InfrastructureError(f"Polling {self.url} failed: {exc}") from exc

    async def fetch(self, cursor: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {self._cursor_param: cursor} if cursor else {}
        data = await self._get(params)
        if self._items_path:
            data = lookup(data, self._items_path, [])
        if not isinstance(data, list):
            raise InfrastructureError(f"Expected a list of events from {self.url}")
        return [item for item in data if isinstance(item, dict)]


class HttpDataSource(HttpEventSource):
    """Fetches a JSON object snapshot from an endpoint."""

    async def snapshot(self) -> Dict[str, Any]:
        data = await self._get({})
        if self._items_path:
            data = lookup(data, self._items_path, {})
        if not isinstance(data, dict):
            return {"value": data}
        return data


class StaticEventSource:
    """In-process event feed; events are pushed with :meth:`push`."""

    def __init__(self, events: Optional[List[Dict[str, Any]]] = None) -> None:
        self.events: List[Dict[str, Any]] = list(events or [])

    def push(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    async def fetch(self, cursor: Optional[str] = None) -> List[Dict[str, Any]]:
        if cursor is None:
            return list(self.events)
        ids = [str(e.get("id")) for e in self.events]
        if cursor not in ids:
            return list(self.events)
        return self.events[ids.index(cursor) + 1 :]


class StaticDataSource:
    """Holds a mutable snapshot."""

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self.data: Dict[str, Any] = dict(data or {})

    async def snapshot(self) -> Dict[str, Any]:
        return dict(self.data)


def build_event_source(
    config: Mapping[str, Any], client: Optional[httpx.AsyncClient] = None
) -> EventSource:
    source = config.get("source") or {}
    if source.get("type", "http") != "http" or not source.get("url"):
        raise ConfigurationError("event_poll triggers need source.url (type http)")
    return HttpEventSource(
        source["url"],
        client=client,
        headers=source.get("headers"),
        items_path=source.get("items_path", source.get("itemsPath")),
        cursor_param=source.get("cursor_param", source.get("cursorParam", "since")),
    )


def build_data_source(
    config: Mapping[str, Any], client: Optional[httpx.AsyncClient] = None
) -> DataSource:
    source = config.get("source") or {}
    if source.get("type", "http") != "http" or not source.get("url"):
        raise ConfigurationError("condition_poll triggers need source.url (type http)")
    return HttpDataSource(
        source["url"],
        client=client,
        headers=source.get("headers"),
        items_path=source.get("items_path", source.get("itemsPath")),
    )
