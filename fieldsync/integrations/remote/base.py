"""
Remote backend contract consumed by the sync engines.
"""

from abc import ABC, abstractmethod
from typing import Optional

from fieldsync.core.cancellation import CancelToken
from fieldsync.schemas.sync import ReadingPayload, RouteAssignmentGraph


class RemoteStore(ABC):
    """
    Stateless request/response client for the backend.

    Implementations must be safe to retry (inserts are keyed on the client
    generated record id) and must observe the cancel token they are handed.
    """

    @abstractmethod
    async def fetch_route_graph(
        self,
        reader_id: str,
        cancel_token: CancelToken,
        weekday: Optional[str] = None
    ) -> RouteAssignmentGraph:
        """
        Fetch the reader's route assignment graph.

        Args:
            reader_id: Reader whose routes are requested
            cancel_token: Token of the calling session
            weekday: Restrict to routes assigned on this weekday label
        """

    @abstractmethod
    async def insert_record(self, payload: ReadingPayload, cancel_token: CancelToken) -> str:
        """Insert one reading and return the identifier assigned by the backend."""

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
