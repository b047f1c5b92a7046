"""
Transport layer.

``Connection`` is the narrow contract the orchestration core calls into.
``HttpConnection`` implements it over the Bulk API XML endpoints with ``httpx``.
"""

from __future__ import annotations

import typing as t
import xml.etree.ElementTree as ET
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

import httpx
import structlog

from bulkquery.exceptions import TransportError
from bulkquery.models import DEFAULT_API_VERSION, JobInfo
from bulkquery.status import BatchState

log = structlog.get_logger(__name__)

XML_HEADER = '<?xml version="1.0" encoding="utf-8" ?>'
XML_NAMESPACE = "http://www.force.com/2009/06/asyncapi/dataload"


class Connection(t.Protocol):
    """
    Calls the orchestration core makes against the remote service.

    Every method raises ``TransportError`` when the remote call fails.
    """

    @property
    def instance_url(self) -> str: ...

    def submit_job(self, target: str) -> str: ...

    def close_job(self, job_id: str) -> None: ...

    def get_job_status(self, job_id: str) -> JobInfo: ...

    def submit_batch(self, job_id: str, query_text: str) -> str: ...

    def get_batch_status(self, job_id: str, batch_id: str) -> BatchState: ...

    def fetch_batch_payload(self, job_id: str, batch_id: str) -> t.Iterable[bytes]: ...

    def describe_fields(self, target: str) -> list[str]: ...

    def find_earliest(self, target: str, date_field: str) -> datetime | None: ...


def _local_name(tag: str) -> str:
    return tag.rsplit(sep="}", maxsplit=1)[-1]


def parse_xml(*, content: bytes) -> dict[str, list[str]]:
    """
    Flatten a Bulk API XML document into ``{element: [text, ...]}``.

    Parameters
    ----------
    content : bytes
        Raw XML response body.

    Returns
    -------
    dict[str, list[str]]
        Text values of the root's direct children keyed by their local name.

    Raises
    ------
    TransportError
        If the body is not well-formed XML.
    """
    try:
        root = ET.fromstring(content)
    except ET.ParseError as error:
        raise TransportError(f"Malformed XML response: {error}") from error
    parsed: dict[str, list[str]] = {}
    for child in root:
        parsed.setdefault(_local_name(child.tag), []).append((child.text or "").strip())
    return parsed


def _first(parsed: dict[str, list[str]], key: str) -> str | None:
    values = parsed.get(key)
    if not values or not values[0]:
        return None
    return values[0]


def _parse_timestamp(value: str) -> datetime:
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt).astimezone(timezone.utc)
        except ValueError:
            continue
    raise TransportError(f"Unexpected timestamp format: {value!r}")


class HttpConnection:
    """
    Bulk API client over a synchronous ``httpx.Client``.

    Parameters
    ----------
    instance_url : str
        Instance base URL, e.g. ``https://na1.salesforce.com``.
    session_id : str
        Session id sent with every request.
    api_version : str, optional
        Remote API version.
    client : httpx.Client | None, optional
        Preconfigured client, mostly useful to inject a mock transport.
    """

    def __init__(
        self,
        *,
        instance_url: str,
        session_id: str,
        api_version: str = DEFAULT_API_VERSION,
        client: httpx.Client | None = None,
    ) -> None:
        self._instance_url = instance_url.rstrip("/")
        self._session_id = session_id
        self.api_version = api_version
        self._client = client or httpx.Client(timeout=60.0)
        log.debug(
            event="Initialized HttpConnection",
            instance_url=self._instance_url,
            api_version=api_version,
        )

    @property
    def instance_url(self) -> str:
        return self._instance_url

    @property
    def _async_base(self) -> str:
        return f"{self._instance_url}/services/async/{self.api_version}"

    @property
    def _rest_base(self) -> str:
        return f"{self._instance_url}/services/data/v{self.api_version}"

    def _headers(self, content_type: str | None = None) -> dict[str, str]:
        headers = {
            "X-SFDC-Session": self._session_id,
            "Authorization": f"Bearer {self._session_id}",
        }
        if content_type is not None:
            headers["Content-Type"] = content_type
        return headers

    def _request(
        self,
        method: str,
        url: str,
        *,
        content: str | None = None,
        content_type: str | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            response = self._client.request(
                method,
                url,
                content=content.encode("utf-8") if content is not None else None,
                headers=self._headers(content_type=content_type),
                params=params,
            )
        except httpx.HTTPError as error:
            log.error(event="HTTP request failed", method=method, url=url, error=str(error))
            raise TransportError(f"{method} {url} failed: {error}") from error
        if response.is_error:
            log.error(
                event="HTTP request returned an error",
                method=method,
                url=url,
                status_code=response.status_code,
                error_body=response.text,
            )
            raise TransportError(f"{method} {url} returned HTTP {response.status_code}")
        return response

    def _post_xml(self, path: str, body: str) -> dict[str, list[str]]:
        response = self._request(
            "POST",
            f"{self._async_base}/{path}",
            content=body,
            content_type="application/xml; charset=UTF-8",
        )
        return parse_xml(content=response.content)

    def _get_xml(self, path: str) -> dict[str, list[str]]:
        response = self._request("GET", f"{self._async_base}/{path}")
        return parse_xml(content=response.content)

    def _get_json(self, path: str, params: dict[str, str] | None = None) -> dict[str, t.Any]:
        response = self._request("GET", f"{self._rest_base}/{path}", params=params)
        try:
            return response.json()
        except ValueError as error:
            raise TransportError(f"Malformed JSON response from {path}") from error

    def submit_job(self, target: str) -> str:
        body = (
            f'{XML_HEADER}<jobInfo xmlns="{XML_NAMESPACE}">'
            "<operation>query</operation>"
            f"<object>{target}</object>"
            "<contentType>CSV</contentType>"
            "</jobInfo>"
        )
        parsed = self._post_xml("job", body)
        job_id = _first(parsed, "id")
        if job_id is None:
            raise TransportError(f"Job creation response for {target} has no id")
        return job_id

    def close_job(self, job_id: str) -> None:
        body = f'{XML_HEADER}<jobInfo xmlns="{XML_NAMESPACE}"><state>Closed</state></jobInfo>'
        self._post_xml(f"job/{job_id}", body)

    def get_job_status(self, job_id: str) -> JobInfo:
        parsed = self._get_xml(f"job/{job_id}")
        return JobInfo.model_validate({key: values[0] for key, values in parsed.items()})

    def submit_batch(self, job_id: str, query_text: str) -> str:
        response = self._request(
            "POST",
            f"{self._async_base}/job/{job_id}/batch",
            content=query_text,
            content_type="text/csv; charset=UTF-8",
        )
        batch_id = _first(parse_xml(content=response.content), "id")
        if batch_id is None:
            raise TransportError(f"Batch creation response for job {job_id} has no id")
        return batch_id

    def get_batch_status(self, job_id: str, batch_id: str) -> BatchState:
        parsed = self._get_xml(f"job/{job_id}/batch/{batch_id}")
        state = _first(parsed, "state")
        try:
            return BatchState(state)
        except ValueError as error:
            raise TransportError(f"Unknown state {state!r} for batch {batch_id}") from error

    def fetch_batch_payload(self, job_id: str, batch_id: str) -> Iterator[bytes]:
        path = f"job/{job_id}/batch/{batch_id}/result"
        result_ids = parse_xml(content=self._request("GET", f"{self._async_base}/{path}").content)
        for result_id in result_ids.get("result", []):
            with self._stream(f"{self._async_base}/{path}/{result_id}") as response:
                try:
                    yield from response.iter_bytes()
                except httpx.HTTPError as error:
                    raise TransportError(f"Download of batch {batch_id} failed") from error

    @contextmanager
    def _stream(self, url: str) -> Iterator[httpx.Response]:
        try:
            with self._client.stream("GET", url, headers=self._headers()) as response:
                if response.is_error:
                    raise TransportError(f"GET {url} returned HTTP {response.status_code}")
                yield response
        except httpx.HTTPError as error:
            raise TransportError(f"GET {url} failed: {error}") from error

    def describe_fields(self, target: str) -> list[str]:
        payload = self._get_json(f"sobjects/{target}/describe")
        return [field["name"] for field in payload.get("fields", [])]

    def find_earliest(self, target: str, date_field: str) -> datetime | None:
        soql = f"SELECT {date_field} FROM {target} ORDER BY {date_field} LIMIT 1"
        payload = self._get_json("query", params={"q": soql})
        records = payload.get("records") or []
        if not records or not records[0].get(date_field):
            return None
        return _parse_timestamp(records[0][date_field])

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpConnection":
        return self

    def __exit__(self, *exc_info: t.Any) -> None:
        self.close()

    def to_log(self) -> dict[str, str]:
        return {"instance_url": self._instance_url, "api_version": self.api_version}
