from __future__ import annotations

import copy
import os
from typing import Any, Dict, List, Optional, Protocol

import httpx

from fiqh_assistant.schemas.models import ChatSession, ConnectivityStatus, Message
from fiqh_assistant.utils.env import get_float_env
from fiqh_assistant.utils.errors import ConnectivityDegraded, SchemaMissing
from fiqh_assistant.utils.logging import get_logger

log = get_logger(__name__)

DEFAULT_TABLE = "chat_sessions"
# undefined_table from Postgres, and PostgREST's schema-cache miss
_MISSING_TABLE_CODES = {"42P01", "PGRST205"}


class RemoteStoreError(ConnectivityDegraded):
    """Structured failure returned by the remote persistence service."""

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code

    def references_table(self, table: str) -> bool:
        code = self.code or ""
        if code in _MISSING_TABLE_CODES:
            return True
        # integrity violations name the table through its constraints
        return not code.startswith("23") and table in self.message


class MissingTableError(RemoteStoreError, SchemaMissing):
    """The session table does not exist on the remote side."""


def classify_remote_failure(exc: BaseException, table: str = DEFAULT_TABLE) -> ConnectivityStatus:
    if isinstance(exc, SchemaMissing):
        return ConnectivityStatus.MISSING_TABLE
    if isinstance(exc, RemoteStoreError) and exc.references_table(table):
        return ConnectivityStatus.MISSING_TABLE
    return ConnectivityStatus.OFFLINE


def session_to_row(session: ChatSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "title": session.title,
        "messages": messages_to_rows(session.messages),
        "created_at": session.created_at.isoformat(),
    }


def messages_to_rows(messages: List[Message]) -> List[Dict[str, Any]]:
    return [message.to_json_dict() for message in messages]


def row_to_session(row: Dict[str, Any]) -> ChatSession:
    return ChatSession.model_validate(
        {
            "id": row["id"],
            "title": row.get("title") or "",
            "messages": row.get("messages") or [],
            "createdAt": row.get("created_at") or row.get("createdAt"),
        }
    )


class SessionTable(Protocol):
    """Row-oriented remote store. Every operation raises ``RemoteStoreError`` on failure."""

    table: str

    async def select_all_ordered(self) -> List[Dict[str, Any]]: ...

    async def insert(self, row: Dict[str, Any]) -> None: ...

    async def update(self, row_id: str, partial: Dict[str, Any]) -> None: ...

    async def delete(self, row_id: str) -> None: ...


class SupabaseSessionTable:
    """Talks to a Supabase project through its PostgREST endpoint."""

    def __init__(
        self,
        url: str,
        api_key: str,
        *,
        table: str = DEFAULT_TABLE,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.table = table
        self.timeout = timeout if timeout is not None else get_float_env("SUPABASE_TIMEOUT_SECONDS", 10.0)
        self._transport = transport

    @classmethod
    def from_env(cls) -> Optional["SupabaseSessionTable"]:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_ANON_KEY")
        if not url or not key:
            log.info("remote_store_not_configured")
            return None
        return cls(url, key, table=os.getenv("SUPABASE_TABLE", DEFAULT_TABLE))

    @property
    def endpoint(self) -> str:
        return f"{self.url}/rest/v1/{self.table}"

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=minimal",
        }

    def _error_from_response(self, response: httpx.Response) -> RemoteStoreError:
        message = response.text or f"HTTP {response.status_code}"
        code: str | None = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            message = str(body.get("message") or message)
            code = str(body["code"]) if body.get("code") is not None else None
        error_cls = RemoteStoreError
        if (code or "") in _MISSING_TABLE_CODES or (response.status_code == 404 and self.table in message):
            error_cls = MissingTableError
        return error_cls(message, code=code, status_code=response.status_code)

    async def _request(
        self,
        method: str,
        *,
        params: Dict[str, str] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, self.endpoint, headers=self._headers(), params=params, json=json)
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise self._error_from_response(response)
        return response

    async def select_all_ordered(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", params={"select": "*", "order": "created_at.desc"})
        try:
            rows = response.json()
        except ValueError as exc:
            raise RemoteStoreError("remote returned a non-JSON body") from exc
        if not isinstance(rows, list):
            raise RemoteStoreError("remote returned an unexpected payload")
        return rows

    async def insert(self, row: Dict[str, Any]) -> None:
        await self._request("POST", json=[row])

    async def update(self, row_id: str, partial: Dict[str, Any]) -> None:
        await self._request("PATCH", params={"id": f"eq.{row_id}"}, json=partial)

    async def delete(self, row_id: str) -> None:
        await self._request("DELETE", params={"id": f"eq.{row_id}"})


class InMemorySessionTable:
    """Process-local stand-in for the remote store; ``fail_with`` makes every call raise."""

    def __init__(self, rows: List[Dict[str, Any]] | None = None, *, table: str = DEFAULT_TABLE) -> None:
        self.table = table
        self.rows: Dict[str, Dict[str, Any]] = {row["id"]: copy.deepcopy(row) for row in rows or []}
        self.fail_with: Exception | None = None
        self.calls: List[tuple[str, str | None]] = []

    def _check(self, operation: str, row_id: str | None = None) -> None:
        self.calls.append((operation, row_id))
        if self.fail_with is not None:
            raise self.fail_with

    async def select_all_ordered(self) -> List[Dict[str, Any]]:
        self._check("select")
        ordered = sorted(self.rows.values(), key=lambda row: str(row.get("created_at") or ""), reverse=True)
        return copy.deepcopy(ordered)

    async def insert(self, row: Dict[str, Any]) -> None:
        self._check("insert", row.get("id"))
        if row["id"] in self.rows:
            raise RemoteStoreError(f'duplicate key value violates unique constraint "{self.table}_pkey"', code="23505")
        self.rows[row["id"]] = copy.deepcopy(row)

    async def update(self, row_id: str, partial: Dict[str, Any]) -> None:
        self._check("update", row_id)
        if row_id in self.rows:
            self.rows[row_id].update(copy.deepcopy(partial))

    async def delete(self, row_id: str) -> None:
        self._check("delete", row_id)
        self.rows.pop(row_id, None)
