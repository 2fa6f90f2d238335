"""
Query Service - the single I/O boundary to the hosted research warehouse.

Executes SQL against a versioned release snapshot through the LabKey
``execute_sql`` API and returns the rows as a DataFrame.

Every call carries an explicit row cap. A result whose row count equals the
cap is treated as truncated: the query is re-issued with a larger cap, or a
QueryTruncatedError is raised when expansion is disabled or exhausted.
Transient failures (timeouts, connection errors, HTTP 429/5xx) are retried
with exponential backoff.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import pandas as pd
import requests
import yaml
from labkey.api_wrapper import APIWrapper
from labkey.exceptions import ServerContextError

from .queries import get_template

logger = logging.getLogger(__name__)


class QueryError(RuntimeError):
    """A query failed and the current stage cannot continue."""

    def __init__(self, message: str, sql: Optional[str] = None):
        super().__init__(message)
        self.sql = sql


class QueryTruncatedError(QueryError):
    """The result hit its row cap and could not be re-queried."""

    def __init__(self, message: str, sql: Optional[str] = None, max_rows: int = 0):
        super().__init__(message, sql)
        self.max_rows = max_rows


@dataclass
class QueryConfig:
    """Connection and dispatch settings for the query service."""

    domain: str
    database_version: str
    context_path: str = "labkey"
    schema_name: str = "lists"
    use_ssl: bool = True
    api_key: Optional[str] = None
    max_rows: int = 50_000
    expand_truncated: bool = True
    max_row_ceiling: int = 10_000_000
    timeout: int = 300
    max_retries: int = 4
    backoff_base: float = 1.0
    max_workers: int = 1

    def __post_init__(self):
        if not self.domain:
            raise ValueError("A warehouse domain must be configured")
        if not self.database_version:
            raise ValueError("A database version (release snapshot) must be configured")
        if self.max_rows < 1:
            raise ValueError("max_rows must be positive")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    @classmethod
    def from_yaml(cls, config_file: Path) -> "QueryConfig":
        """Load the ``warehouse`` section of a YAML configuration file."""
        with open(config_file) as f:
            config = yaml.safe_load(f) or {}

        section = config.get("warehouse", {})
        known = set(cls.__dataclass_fields__)
        unknown = set(section) - known
        if unknown:
            raise ValueError(f"Unknown warehouse settings: {sorted(unknown)}")

        return cls(**section)


def _status_code(exc: Exception) -> Optional[int]:
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def is_retryable(exc: Exception) -> bool:
    """
    Transient transport errors and 429/5xx responses are retryable.

    The LabKey client wraps most request failures in ServerContextError;
    the wrapped exception is classified instead.
    """
    if isinstance(exc, ServerContextError):
        exc = getattr(exc, "exception", exc)
    if isinstance(exc, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return True
    code = _status_code(exc)
    if code is None:
        return False
    return code == 429 or code >= 500


class QueryService:
    """Executes SQL against the warehouse release configured at construction."""

    def __init__(
        self,
        config: QueryConfig,
        client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the query service.

        Args:
            config: Connection, row-cap and retry settings.
            client: Object exposing ``query.execute_sql``. A LabKey
                ``APIWrapper`` is built from ``config`` when not provided.
            sleep: Sleep function used between retries.
        """
        self.config = config
        self._client = client
        self._sleep = sleep

        logger.info(f"Query service configured for {config.domain}")
        logger.info(f"  Release: {config.database_version}")
        logger.info(f"  Default row cap: {config.max_rows}")

    @property
    def client(self):
        if self._client is None:
            self._client = APIWrapper(
                self.config.domain,
                self.config.database_version,
                context_path=self.config.context_path,
                use_ssl=self.config.use_ssl,
                api_key=self.config.api_key,
            )
        return self._client

    def _execute_once(self, sql: str, container_path: str, max_rows: int) -> dict:
        """Run a single request, retrying transient failures."""
        attempts = self.config.max_retries + 1
        for attempt in range(attempts):
            try:
                return self.client.query.execute_sql(
                    self.config.schema_name,
                    sql,
                    max_rows=max_rows,
                    timeout=self.config.timeout,
                    container_path=container_path,
                )
            except Exception as e:
                if not is_retryable(e):
                    raise QueryError(f"Query failed: {e}", sql) from e
                if attempt == attempts - 1:
                    raise QueryError(
                        f"Query failed after {attempts} attempts: {e}", sql
                    ) from e
                wait_time = self.config.backoff_base * 2 ** attempt
                logger.warning(
                    f"Transient query failure ({e}); retry {attempt + 1}/"
                    f"{self.config.max_retries} in {wait_time:.1f}s"
                )
                self._sleep(wait_time)

    def execute(
        self,
        sql: str,
        database_version: Optional[str] = None,
        max_rows: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        Execute SQL and return the rows.

        Args:
            sql: Query text.
            database_version: Release snapshot to address. Defaults to the
                configured release.
            max_rows: Row cap. Defaults to the configured cap.

        Returns:
            DataFrame of result rows (empty when nothing matched).

        Raises:
            QueryError: The remote call failed.
            QueryTruncatedError: The row cap was reached and could not be raised.
        """
        version = database_version or self.config.database_version
        cap = max_rows or self.config.max_rows

        while True:
            result = self._execute_once(sql, version, cap) or {}
            rows = result.get("rows") or []

            if len(rows) < cap:
                break

            logger.warning(f"Query returned {len(rows)} rows, equal to its cap: truncated")
            next_cap = cap * 10
            if not self.config.expand_truncated or next_cap > self.config.max_row_ceiling:
                raise QueryTruncatedError(
                    f"Result truncated at {cap} rows", sql, max_rows=cap
                )
            logger.info(f"Re-querying with row cap {next_cap}")
            cap = next_cap

        if rows:
            return pd.DataFrame(rows)

        columns = [
            field["name"]
            for field in result.get("metaData", {}).get("fields", [])
            if "name" in field
        ]
        return pd.DataFrame(columns=columns)

    def execute_template(
        self,
        key: str,
        database_version: Optional[str] = None,
        max_rows: Optional[int] = None,
        **params,
    ) -> pd.DataFrame:
        """Render a named template and execute it."""
        sql = get_template(key).render(**params)
        logger.debug(f"Executing template {key}")
        return self.execute(sql, database_version=database_version, max_rows=max_rows)

    def execute_many(
        self,
        statements: Sequence[str],
        database_version: Optional[str] = None,
        max_rows: Optional[int] = None,
    ) -> list[pd.DataFrame]:
        """
        Execute independent statements, in parallel up to ``max_workers``.

        Results are returned in the order of ``statements``. The first
        failure is raised once all dispatched queries have finished.
        """
        statements = list(statements)
        if self.config.max_workers == 1 or len(statements) < 2:
            return [
                self.execute(sql, database_version=database_version, max_rows=max_rows)
                for sql in statements
            ]

        self.client  # build once before worker threads share it
        n_workers = min(self.config.max_workers, len(statements))
        logger.info(f"Dispatching {len(statements)} queries over {n_workers} workers")
        with ThreadPoolExecutor(max_workers=n_workers) as pool:
            futures = [
                pool.submit(self.execute, sql, database_version, max_rows)
                for sql in statements
            ]
            return [future.result() for future in futures]
