# Research warehouse access: query service, SQL construction, templates
from .client import QueryConfig, QueryError, QueryService, QueryTruncatedError
from .queries import QUERIES, get_template
from .sql import QueryTemplate, chunked

__all__ = [
    "QueryConfig",
    "QueryError",
    "QueryService",
    "QueryTruncatedError",
    "QUERIES",
    "QueryTemplate",
    "chunked",
    "get_template",
]
