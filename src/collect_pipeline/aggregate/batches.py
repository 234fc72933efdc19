"""
Paged enumeration of instance IDs.

InstanceIdBatchGetter walks /view/submissionList one page at a time, always
one page ahead: a page is only handed out once the following one has been
fetched, so has_next() can answer without touching the network. The
enumeration ends at the first page with no IDs; its cursor is the terminal
cursor and becomes the cursor of the last batch handed out.
"""

import logging
from typing import AsyncIterator, Optional

from core.download.http_client import Http, Response
from core.errors.exceptions import PipelineError
from core.logging.utilities import LoggedClass

from collect_pipeline.aggregate.parsing import parse_instance_id_batch
from collect_pipeline.aggregate.server import AggregateServer
from collect_pipeline.cursor import Cursor, EmptyCursor
from collect_pipeline.errors import BatchFetchError, ParsingError
from collect_pipeline.models import InstanceIdBatch

DEFAULT_PAGE_SIZE = 100


class InstanceIdBatchGetter(LoggedClass):
    """
    Lazy, finite iterator over pages of instance IDs.

    Build it with create(), which fetches the first page eagerly so that a
    broken listing is reported before anything else happens.

    Usage:
        getter = await InstanceIdBatchGetter.create(http, server, "census", False, cursor)
        async for batch in getter:
            ids.extend(batch.instance_ids)
    """

    log_component = "batches"

    def __init__(
        self,
        http: Http,
        server: AggregateServer,
        form_id: str,
        include_incomplete: bool,
        cursor: Optional[Cursor] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ):
        self.http = http
        self.server = server
        self.form_id = form_id
        self.include_incomplete = include_incomplete
        self.page_size = page_size
        self._next_cursor: Cursor = cursor or EmptyCursor()
        self._next_ids: list = []
        super().__init__()

    @classmethod
    async def create(
        cls,
        http: Http,
        server: AggregateServer,
        form_id: str,
        include_incomplete: bool,
        cursor: Optional[Cursor] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> "InstanceIdBatchGetter":
        """
        Build a getter and fetch its first page.

        Raises:
            BatchFetchError: If the first page can't be fetched or parsed
        """
        getter = cls(http, server, form_id, include_incomplete, cursor, page_size)
        await getter._fetch_next()
        return getter

    async def _fetch_next(self) -> None:
        request = self.server.instance_id_batch_request(
            self.form_id,
            self.page_size,
            self._next_cursor,
            self.include_incomplete,
        )
        try:
            response = await self.http.execute(request)
        except PipelineError as e:
            raise BatchFetchError(
                f"Failed to fetch instance IDs of {self.form_id}",
                cause=e,
                context={"form_id": self.form_id},
            ) from e

        batch = self._parse(response)
        self._next_ids = batch.instance_ids
        self._next_cursor = batch.cursor
        self._log(
            logging.DEBUG,
            "Fetched instance ID page",
            form_id=self.form_id,
            batch_size=len(batch),
            cursor=batch.cursor.type_name,
        )

    def _parse(self, response: Response) -> InstanceIdBatch:
        if not response.is_success:
            raise BatchFetchError(
                f"Failed to fetch instance IDs of {self.form_id}: HTTP {response.status_code}",
                response=response,
                context={"form_id": self.form_id},
            )
        try:
            return parse_instance_id_batch(response.text)
        except (ParsingError, UnicodeDecodeError) as e:
            raise BatchFetchError(
                f"Invalid instance ID page for {self.form_id}",
                response=response,
                cause=e,
                context={"form_id": self.form_id},
            ) from e

    def has_next(self) -> bool:
        return bool(self._next_ids)

    async def next_batch(self) -> InstanceIdBatch:
        """
        Hand out the pending page and fetch the one after it.

        Raises:
            StopAsyncIteration: If there are no more pages
            BatchFetchError: If the following page can't be fetched
        """
        if not self.has_next():
            raise StopAsyncIteration
        instance_ids, cursor = list(self._next_ids), self._next_cursor
        await self._fetch_next()
        if not self.has_next() and not self._next_cursor.is_empty:
            # Last page: resume from wherever the terminal page left off
            cursor = self._next_cursor
        return InstanceIdBatch(instance_ids=instance_ids, cursor=cursor)

    def __aiter__(self) -> AsyncIterator[InstanceIdBatch]:
        return self

    async def __anext__(self) -> InstanceIdBatch:
        return await self.next_batch()
