"""
Main endpoint for users.
Exposes ``Api``, whose ``query`` and ``query_fields`` methods block until the
query is resolved or the time limit is reached.
"""

from __future__ import annotations

import dataclasses
import time
import typing as t

import structlog

from bulkquery.connection import Connection
from bulkquery.models import QueryOptions, QueryResults
from bulkquery.query import Query
from bulkquery.utils.logging import logging_context

log = structlog.get_logger(__name__)


def _resolve_options(options: QueryOptions | t.Mapping[str, t.Any] | None) -> QueryOptions:
    if options is None:
        return QueryOptions()
    if isinstance(options, QueryOptions):
        return options
    return QueryOptions.model_validate(dict(options))


class Api:
    """
    Facade running the poll loop.

    Parameters
    ----------
    connection : Connection
        Transport used for every remote call.
    filename_prefix : str, optional
        Prefix prepended to every result filename.
    """

    def __init__(self, connection: Connection, *, filename_prefix: str = "") -> None:
        self._connection = connection
        self._filename_prefix = filename_prefix
        self._clock: t.Callable[[], float] = time.monotonic
        self._sleep: t.Callable[[float], None] = time.sleep

    @property
    def instance_url(self) -> str:
        url = self._connection.instance_url
        return url if url.endswith("/") else url + "/"

    def _new_query(
        self, *, target: str, query_text: str | None, options: QueryOptions
    ) -> Query:
        return Query(
            target=target,
            query_text=query_text,
            connection=self._connection,
            options=options,
            filename_prefix=self._filename_prefix,
            clock=self._clock,
        )

    def start_query(
        self,
        target: str,
        query_text: str,
        options: QueryOptions | t.Mapping[str, t.Any] | None = None,
    ) -> Query:
        """
        Start a query without waiting for it.

        Parameters
        ----------
        target : str
            Queried object name, e.g. ``Opportunity``.
        query_text : str
            Query, e.g. ``SELECT Name FROM Opportunity``.
        options : QueryOptions | Mapping | None, optional
            Query settings.

        Returns
        -------
        Query
            The started query.
        """
        query = self._new_query(
            target=target, query_text=query_text, options=_resolve_options(options)
        )
        query.start()
        return query

    def query(
        self,
        target: str,
        query_text: str,
        options: QueryOptions | t.Mapping[str, t.Any] | None = None,
    ) -> QueryResults:
        """
        Run a query and block until it is resolved.

        Parameters
        ----------
        target : str
            Queried object name, e.g. ``Opportunity``.
        query_text : str
            Query, e.g. ``SELECT Name FROM Opportunity``.
        options : QueryOptions | Mapping | None, optional
            Query settings. ``check_interval`` defaults to 10 seconds and
            ``time_limit`` to two hours.

        Returns
        -------
        QueryResults
            Downloaded filenames, unfinished batches, done jobs, and whether
            the time limit was hit.

        Raises
        ------
        TransportError
            If submitting the job or its batches fails.
        """
        options = _resolve_options(options)
        with logging_context(target=target):
            start_time = self._clock()
            query = self.start_query(target, query_text, options)
            return self._poll(query=query, options=options, start_time=start_time)

    def query_fields(
        self,
        target: str,
        options: QueryOptions | t.Mapping[str, t.Any] | None = None,
    ) -> QueryResults:
        """
        Like ``query``, selecting every field of ``target``.
        """
        options = _resolve_options(options)
        with logging_context(target=target):
            start_time = self._clock()
            query = self._new_query(target=target, query_text=None, options=options)
            query.start_with_fields()
            return self._poll(query=query, options=options, start_time=start_time)

    def _poll(self, *, query: Query, options: QueryOptions, start_time: float) -> QueryResults:
        """
        Poll ``query`` until it finishes or the time limit is exceeded.

        Returns
        -------
        QueryResults
            Results harvested from restarted jobs merged with the final
            download pass.
        """
        directory = query.directory
        harvested = QueryResults()

        while True:
            status = query.check_status()
            if status.some_failed:
                harvested = dataclasses.replace(harvested, some_failed=True)

            if status.finished:
                results = harvested.merge(query.get_results(directory))
                log.info(event="Query finished", **results.to_log())
                return results

            if self._clock() - start_time > options.time_limit:
                log.warning(
                    event="Ran out of time limit, downloading what's available and terminating",
                    time_limit=options.time_limit,
                )
                results = harvested.merge(query.get_results(directory))
                results = dataclasses.replace(results, timed_out=True)
                log.info(event="Query timed out", **results.to_log())
                return results

            harvested = harvested.merge(query.get_result_or_restart(directory))
            log.info(event="Sleeping", check_interval=options.check_interval)
            self._sleep(options.check_interval)
