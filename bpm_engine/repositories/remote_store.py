"""Remote Document Store - CouchDB-compatible HTTP client for one database"""
import re
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from ..config.settings import Settings, get_settings
from ..domain.errors import RemoteConflictError, RemoteStoreError
from ..domain.models import RemoteCredentials
from ..utils.logger import get_logger

logger = get_logger(__name__)


def remote_database_name(org_id: str, settings: Optional[Settings] = None) -> str:
    """Remote database names must be lowercase and start with a letter"""
    settings = settings or get_settings()
    safe_org = re.sub(r"[^a-z0-9_$()+/-]", "_", org_id.lower())
    return f"{settings.remote_db_prefix}{safe_org}"


class RemoteDocumentStore:
    """Thin async client over the document store's HTTP API"""

    def __init__(
        self,
        base_url: str,
        database: str,
        credentials: Optional[RemoteCredentials] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.database = database
        auth = httpx.BasicAuth(credentials.username, credentials.password) if credentials else None
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/{quote(database, safe='')}",
            auth=auth,
            timeout=timeout,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            transport=transport
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.database}"

    async def close(self) -> None:
        await self._client.aclose()

    # =========================================================================
    # Database
    # =========================================================================

    async def exists(self) -> bool:
        """Reachability probe; never raises"""
        try:
            response = await self._client.head("")
        except httpx.HTTPError as e:
            logger.warning(f"Remote store unreachable: {e}")
            return False
        return response.status_code == 200

    async def ensure_database(self) -> bool:
        """Create the database if missing; returns True if it was created"""
        response = await self._request("PUT", "")
        if response.status_code in (201, 202):
            logger.info(f"Created remote database: {self.database}")
            return True
        if response.status_code == 412:
            return False
        raise self._error(response, "create database")

    async def info(self) -> Dict[str, Any]:
        response = await self._request("GET", "")
        if response.status_code != 200:
            raise self._error(response, "read database info")
        return response.json()

    # =========================================================================
    # Documents
    # =========================================================================

    async def get(self, doc_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", self._doc_path(doc_id))
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise self._error(response, f"read {doc_id}")
        return response.json()

    async def put(self, doc: Dict[str, Any]) -> str:
        """
        Write a document; returns the new revision

        Raises:
            RemoteConflictError: the document's ``_rev`` is stale
        """
        doc_id = doc["_id"]
        response = await self._request("PUT", self._doc_path(doc_id), json=doc)
        if response.status_code == 409:
            raise RemoteConflictError(
                f"Remote conflict for {doc_id}",
                details={"process_id": doc_id, "rev": doc.get("_rev")}
            )
        if response.status_code not in (200, 201, 202):
            raise self._error(response, f"write {doc_id}")
        return response.json()["rev"]

    async def delete(self, doc_id: str, rev: str) -> bool:
        response = await self._request("DELETE", self._doc_path(doc_id), params={"rev": rev})
        if response.status_code == 404:
            return False
        if response.status_code == 409:
            raise RemoteConflictError(f"Remote conflict deleting {doc_id}", details={"process_id": doc_id})
        if response.status_code not in (200, 202):
            raise self._error(response, f"delete {doc_id}")
        return True

    async def list_all(self) -> List[Dict[str, Any]]:
        """All documents except design documents"""
        response = await self._request("GET", "_all_docs", params={"include_docs": "true"})
        if response.status_code != 200:
            raise self._error(response, "list documents")
        return [
            row["doc"] for row in response.json().get("rows", [])
            if row.get("doc") and not row["id"].startswith("_design/")
        ]

    async def changes(self, since: Optional[str] = None) -> Dict[str, Any]:
        """Changes feed since a sequence; returns {docs, last_seq}"""
        params = {"include_docs": "true", "since": since or "0"}
        response = await self._request("GET", "_changes", params=params)
        if response.status_code != 200:
            raise self._error(response, "read changes feed")
        data = response.json()
        docs = [
            result["doc"] for result in data.get("results", [])
            if result.get("doc")
            and not result.get("deleted")
            and not result["id"].startswith("_design/")
        ]
        return {"docs": docs, "last_seq": data.get("last_seq")}

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _doc_path(doc_id: str) -> str:
        return quote(doc_id, safe="")

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteStoreError(
                f"Remote store request failed: {e}",
                details={"database": self.database, "method": method}
            ) from e

    def _error(self, response: httpx.Response, action: str) -> RemoteStoreError:
        logger.error(f"Remote store error ({action}): {response.status_code} - {response.text}")
        return RemoteStoreError(
            f"Remote store failed to {action}: {response.status_code}",
            details={"database": self.database, "status_code": response.status_code}
        )
