"""In-memory stand-in for a CouchDB-style server, served through httpx.MockTransport"""
import json
from typing import Any, Dict, Optional

import httpx


class FakeDatabase:
    def __init__(self, name: str):
        self.name = name
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.seqs: Dict[str, int] = {}
        self.seq = 0

    def write(self, doc: Dict[str, Any]) -> str:
        """Store a document with a fresh revision"""
        doc_id = doc["_id"]
        current = self.docs.get(doc_id)
        generation = int(current["_rev"].split("-")[0]) + 1 if current else 1
        rev = f"{generation}-{self.seq + 1:08x}"
        self.seq += 1
        self.docs[doc_id] = {**doc, "_rev": rev}
        self.seqs[doc_id] = self.seq
        return rev


class FakeCouch:
    """Minimal document store: databases, docs with revisions, _changes, _all_docs"""

    def __init__(self):
        self.databases: Dict[str, FakeDatabase] = {}
        self.reachable = True
        self.requests = []

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def db(self, name: str) -> FakeDatabase:
        return self.databases[name]

    def only_db(self) -> FakeDatabase:
        [database] = self.databases.values()
        return database

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if not self.reachable:
            raise httpx.ConnectError("connection refused", request=request)

        name, _, doc_id = request.url.path.strip("/").partition("/")
        database = self.databases.get(name)

        if not doc_id:
            return self._database(request, name, database)
        if database is None:
            return httpx.Response(404, json={"error": "not_found", "reason": "Database does not exist."})
        if doc_id == "_changes":
            return self._changes(request, database)
        if doc_id == "_all_docs":
            rows = [{"id": i, "key": i, "doc": d} for i, d in database.docs.items()]
            return httpx.Response(200, json={"total_rows": len(rows), "rows": rows})
        return self._document(request, database, doc_id)

    def _database(self, request: httpx.Request, name: str, database: Optional[FakeDatabase]) -> httpx.Response:
        if request.method == "PUT":
            if database is not None:
                return httpx.Response(412, json={"error": "file_exists"})
            self.databases[name] = FakeDatabase(name)
            return httpx.Response(201, json={"ok": True})
        if database is None:
            return httpx.Response(404, json={"error": "not_found"})
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, json={"db_name": name, "doc_count": len(database.docs), "update_seq": str(database.seq)})

    def _changes(self, request: httpx.Request, database: FakeDatabase) -> httpx.Response:
        since = int(request.url.params.get("since", "0"))
        results = [
            {"id": doc_id, "seq": str(seq), "doc": database.docs[doc_id]}
            for doc_id, seq in sorted(database.seqs.items(), key=lambda item: item[1])
            if seq > since and doc_id in database.docs
        ]
        return httpx.Response(200, json={"results": results, "last_seq": str(database.seq)})

    def _document(self, request: httpx.Request, database: FakeDatabase, doc_id: str) -> httpx.Response:
        current = database.docs.get(doc_id)
        if request.method == "GET":
            if current is None:
                return httpx.Response(404, json={"error": "not_found", "reason": "missing"})
            return httpx.Response(200, json=current)

        if request.method == "PUT":
            doc = json.loads(request.content)
            if current is not None and doc.get("_rev") != current["_rev"]:
                return httpx.Response(409, json={"error": "conflict", "reason": "Document update conflict."})
            rev = database.write(doc)
            return httpx.Response(201, json={"ok": True, "id": doc_id, "rev": rev})

        if request.method == "DELETE":
            if current is None:
                return httpx.Response(404, json={"error": "not_found"})
            if request.url.params.get("rev") != current["_rev"]:
                return httpx.Response(409, json={"error": "conflict"})
            del database.docs[doc_id]
            return httpx.Response(200, json={"ok": True, "id": doc_id})

        return httpx.Response(405, json={"error": "method_not_allowed"})
