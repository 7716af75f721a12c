"""Provider ingestion: API client, flat-file sync, import orchestration."""

from market_mirror.ingestion.actions import ActionPlan
from market_mirror.ingestion.client import ApiPaginator, PolygonClient, redact
from market_mirror.ingestion.fanout import BoundedFanout
from market_mirror.ingestion.importer import PolygonImporter, StragglerQueue
from market_mirror.ingestion.ledger import RemoteLedger
from market_mirror.ingestion.object_store import ObjectStore, S3ObjectStore
from market_mirror.ingestion.store import SqlExecutor, SqliteStore, create_store
from market_mirror.ingestion.sync import ObjectSync, SyncReport

__all__ = [
    "ActionPlan",
    "ApiPaginator",
    "BoundedFanout",
    "ObjectStore",
    "ObjectSync",
    "PolygonClient",
    "PolygonImporter",
    "RemoteLedger",
    "S3ObjectStore",
    "SqlExecutor",
    "SqliteStore",
    "StragglerQueue",
    "SyncReport",
    "create_store",
    "redact",
]
