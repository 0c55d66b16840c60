"""Repository modules - In-memory index, local mirror and remote store"""
from .mongo_client import get_client, get_database, close_connection
from .process_store import ProcessStore
from .process_repo import ProcessRepository
from .remote_store import RemoteDocumentStore

__all__ = [
    "get_client",
    "get_database",
    "close_connection",
    "ProcessStore",
    "ProcessRepository",
    "RemoteDocumentStore",
]
