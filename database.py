"""
Supabase PostgREST transport for the data layer.
Pure database access: builds clients for pooled connections and executes concrete queries.
"""
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from utils.connection_pool import ConnectionRole, PooledConnection
from utils.exceptions import (
    BackendAuthError,
    BackendError,
    QueryTimeoutError,
    QueryValidationError,
    TransportError,
)

logger = logging.getLogger(__name__)

REST_PREFIX = "/rest/v1"
CLIENT_INFO = "quantforge-data/1.0.0"

RETRYABLE_STATUS = {408, 425, 429}
VALIDATION_STATUS = {400, 404, 406, 416, 422}
AUTH_STATUS = {401, 403}

HTTP_METHODS = {
    "select": "GET",
    "insert": "POST",
    "update": "PATCH",
    "delete": "DELETE",
}


@dataclass(frozen=True)
class BackendQuery:
    """A concrete PostgREST request: table, operation, ordered query params and body."""
    table: str
    operation: str = "select"
    params: Tuple[Tuple[str, str], ...] = ()
    body: Any = field(default=None, compare=False)
    count: bool = False
    query_type: str = ""

    @property
    def method(self) -> str:
        return HTTP_METHODS[self.operation]

    @property
    def is_read(self) -> bool:
        return self.operation == "select"

    def signature(self) -> str:
        """Normalized cache signature: identical reads always hash the same."""
        canonical = json.dumps(
            {
                "table": self.table,
                "operation": self.operation,
                "params": sorted(self.params),
                "count": self.count,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class BackendResult:
    """Rows returned by the backend plus the exact total when requested."""
    rows: List[Dict[str, Any]]
    total: Optional[int] = None


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Extract the total from a PostgREST Content-Range header such as '0-24/3573'."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1].strip()
    return int(total) if total.isdigit() else None


class SupabaseRestExecutor:
    """Executes BackendQuery objects against PostgREST through a pooled httpx client."""

    async def __call__(self, conn: PooledConnection, query: BackendQuery) -> BackendResult:
        client: httpx.AsyncClient = conn.client
        headers: Dict[str, str] = {}
        prefer = []
        if query.count:
            prefer.append("count=exact")
        if not query.is_read:
            prefer.append("return=representation")
        if prefer:
            headers["Prefer"] = ",".join(prefer)

        try:
            response = await client.request(
                query.method,
                f"{REST_PREFIX}/{query.table}",
                params=list(query.params),
                json=query.body,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise QueryTimeoutError(f"{query.operation}:{query.table}", _timeout_ms(client)) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Transport failure on {query.table}.{query.operation}: {e}") from e

        self._raise_for_status(query, response)

        rows = response.json() if response.content else []
        if isinstance(rows, dict):
            rows = [rows]
        return BackendResult(rows=rows, total=parse_content_range(response.headers.get("Content-Range")))

    @staticmethod
    def _raise_for_status(query: BackendQuery, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return

        message = _error_message(response)
        context = f"{query.table}.{query.operation} returned {status}: {message}"
        if status >= 500 or status in RETRYABLE_STATUS:
            raise TransportError(context, status_code=status)
        if status in AUTH_STATUS:
            raise BackendAuthError(context, status_code=status)
        if status in VALIDATION_STATUS:
            raise QueryValidationError(context, details={"status_code": status})
        raise BackendError(context, status_code=status)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("hint") or payload)
    return str(payload)[:200]


def _timeout_ms(client: httpx.AsyncClient) -> float:
    timeout = getattr(client, "timeout", None)
    read = getattr(timeout, "read", None)
    return read * 1000 if read else 0.0


class SupabaseClientFactory:
    """Builds one httpx client per pooled connection, keyed by role and region."""

    def __init__(self, settings):
        self.settings = settings

    def __call__(self, role: ConnectionRole, region: str, connection_id: str) -> httpx.AsyncClient:
        key = self.settings.write_key if role == ConnectionRole.WRITE else self.settings.supabase_anon_key
        return httpx.AsyncClient(
            base_url=self.settings.supabase_url,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "X-Client-Info": CLIENT_INFO,
                "X-Connection-ID": connection_id,
                "X-Connection-Region": region,
            },
            timeout=httpx.Timeout(self.settings.query_timeout_ms / 1000, connect=10.0),
            limits=httpx.Limits(max_connections=4, max_keepalive_connections=2, keepalive_expiry=300),
            follow_redirects=True,
        )


async def probe_connection(conn: PooledConnection) -> bool:
    """Health probe: the REST root must answer without a server error."""
    response = await conn.client.head(f"{REST_PREFIX}/")
    return response.status_code < 500
