from .api import Api as Api
from .batch import Batch as Batch
from .connection import Connection as Connection
from .connection import HttpConnection as HttpConnection
from .exceptions import BulkQueryError as BulkQueryError
from .exceptions import NotReady as NotReady
from .exceptions import TransportError as TransportError
from .job import Job as Job
from .models import QueryOptions as QueryOptions
from .models import QueryResults as QueryResults
from .query import Query as Query
from .status import BatchState as BatchState
from .status import JobState as JobState

__all__ = [
    "Api",
    "Batch",
    "BatchState",
    "BulkQueryError",
    "Connection",
    "HttpConnection",
    "Job",
    "JobState",
    "NotReady",
    "Query",
    "QueryOptions",
    "QueryResults",
    "TransportError",
]
