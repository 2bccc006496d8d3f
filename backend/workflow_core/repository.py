"""
WORKFLOW PERSISTENCE

One repository interface, two stores:
- MotorWorkflowRepository: MongoDB through motor. Multi-document writes run
  in a session transaction; document and ledger writes are conditional on
  the revision read inside that transaction.
- InMemoryWorkflowRepository: process-local store for tests and local runs.
  A transaction holds a single asyncio lock and restores the previous state
  if the body raises.

Driver errors never leave this module: pymongo.errors are translated into
the workflow error taxonomy here.

Collections:
    workflow_documents   documents with embedded approval_flow / approval_history
    ledger_accounts      unique (subject_id, resource_type, period)
    document_sequences   _id = scope
    entity_versions      unique (entity_id, version_number)
    workflow_settings    _id = doc_type, approver_ids
    audit_logs           insert only
    notification_outbox  pending notification requests
"""

from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import copy
import logging

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from .documents import new_id
from .errors import ConcurrencyConflictError, DependencyUnavailableError, WorkflowError

logger = logging.getLogger(__name__)

WRITE_CONFLICT_CODE = 112


def translate_error(error: PyMongoError, entity: str = "document", entity_id: str = "?") -> WorkflowError:
    """Map a driver error onto the workflow taxonomy."""
    if isinstance(error, DuplicateKeyError):
        return ConcurrencyConflictError(entity, entity_id, "duplicate key")
    if error.has_error_label("TransientTransactionError"):
        return ConcurrencyConflictError(entity, entity_id, "transient transaction error")
    if isinstance(error, OperationFailure) and error.code == WRITE_CONFLICT_CODE:
        return ConcurrencyConflictError(entity, entity_id, "write conflict")
    if isinstance(error, ConnectionFailure):
        return DependencyUnavailableError(f"Database unavailable: {error}")
    return DependencyUnavailableError(f"Database error on {entity} {entity_id}: {error}")


@contextmanager
def driver_errors(entity: str = "document", entity_id: str = "?"):
    try:
        yield
    except PyMongoError as e:
        logger.error(f"[REPOSITORY] {type(e).__name__} on {entity} {entity_id}: {e}")
        raise translate_error(e, entity, entity_id) from e


class WorkflowRepository:
    """Interface shared by both stores. Every method accepts session=None."""

    def transaction(self):
        raise NotImplementedError

    # documents
    async def find_document(self, doc_id: str, session=None) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def find_documents(self, filters: Dict[str, Any], limit: int = 100, session=None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def insert_document(self, doc: Dict[str, Any], session=None) -> None:
        raise NotImplementedError

    async def update_document(
        self,
        doc_id: str,
        expected_revision: int,
        set_fields: Dict[str, Any],
        push_history: Optional[List[Dict[str, Any]]] = None,
        session=None
    ) -> None:
        raise NotImplementedError

    async def delete_document(self, doc_id: str, expected_revision: int, session=None) -> None:
        raise NotImplementedError

    async def count_amendments(self, purchase_order_id: str, session=None) -> int:
        raise NotImplementedError

    # ledger
    async def find_ledger(self, key_filter: Dict[str, Any], session=None) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def upsert_ledger(self, key_filter: Dict[str, Any], seed: Dict[str, Any], session=None) -> Dict[str, Any]:
        raise NotImplementedError

    async def update_ledger(self, ledger_id: str, expected_revision: int, fields: Dict[str, Any], session=None) -> None:
        raise NotImplementedError

    # sequences
    async def increment_sequence(self, scope: str, session=None) -> int:
        raise NotImplementedError

    # versions
    async def count_versions(self, entity_id: str, session=None) -> int:
        raise NotImplementedError

    async def insert_version(self, doc: Dict[str, Any], session=None) -> None:
        raise NotImplementedError

    async def find_versions(self, entity_id: str, session=None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def find_version(self, entity_id: str, version_number: int, session=None) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    # settings
    async def get_approvers(self, doc_type: str, session=None) -> Optional[List[str]]:
        raise NotImplementedError

    async def set_approvers(self, doc_type: str, approver_ids: List[str]) -> None:
        raise NotImplementedError

    # side effects
    async def insert_audit(self, entry: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def insert_notifications(self, notifications: List[Dict[str, Any]]) -> None:
        raise NotImplementedError

    async def find_audit(self, filters: Dict[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def find_notifications(self, filters: Dict[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        raise NotImplementedError


# =============================================================================
# MONGODB
# =============================================================================

class MotorWorkflowRepository(WorkflowRepository):

    def __init__(self, client: AsyncIOMotorClient, db: AsyncIOMotorDatabase):
        self.client = client
        self.db = db

    @asynccontextmanager
    async def transaction(self):
        with driver_errors("transaction"):
            async with await self.client.start_session() as session:
                async with session.start_transaction():
                    yield session

    async def find_document(self, doc_id: str, session=None):
        with driver_errors("WorkflowDocument", doc_id):
            return await self.db.workflow_documents.find_one({"_id": doc_id}, session=session)

    async def find_documents(self, filters, limit=100, session=None):
        with driver_errors("WorkflowDocument"):
            cursor = self.db.workflow_documents.find(filters, session=session).sort("created_at", -1)
            return await cursor.to_list(length=limit)

    async def insert_document(self, doc, session=None):
        with driver_errors("WorkflowDocument", doc.get("_id")):
            await self.db.workflow_documents.insert_one(doc, session=session)

    async def update_document(self, doc_id, expected_revision, set_fields, push_history=None, session=None):
        update = {
            "$set": {**set_fields, "updated_at": datetime.utcnow()},
            "$inc": {"revision": 1},
        }
        if push_history:
            update["$push"] = {"approval_history": {"$each": push_history}}

        with driver_errors("WorkflowDocument", doc_id):
            result = await self.db.workflow_documents.update_one(
                {"_id": doc_id, "revision": expected_revision},
                update,
                session=session
            )

        if result.matched_count == 0:
            raise ConcurrencyConflictError("WorkflowDocument", doc_id, f"revision {expected_revision} is stale")

    async def delete_document(self, doc_id, expected_revision, session=None):
        with driver_errors("WorkflowDocument", doc_id):
            result = await self.db.workflow_documents.delete_one(
                {"_id": doc_id, "revision": expected_revision},
                session=session
            )

        if result.deleted_count == 0:
            raise ConcurrencyConflictError("WorkflowDocument", doc_id, f"revision {expected_revision} is stale")

    async def count_amendments(self, purchase_order_id, session=None):
        with driver_errors("WorkflowDocument", purchase_order_id):
            return await self.db.workflow_documents.count_documents(
                {"doc_type": "PO_AMENDMENT", "payload.purchase_order_id": purchase_order_id},
                session=session
            )

    async def find_ledger(self, key_filter, session=None):
        with driver_errors("LedgerAccount"):
            return await self.db.ledger_accounts.find_one(key_filter, session=session)

    async def upsert_ledger(self, key_filter, seed, session=None):
        on_insert = {k: v for k, v in seed.items() if k not in key_filter}
        on_insert["_id"] = new_id()
        try:
            with driver_errors("LedgerAccount"):
                return await self.db.ledger_accounts.find_one_and_update(
                    key_filter,
                    {"$setOnInsert": on_insert},
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                    session=session
                )
        except ConcurrencyConflictError:
            # Lost the upsert race on the unique key; the winner's row is the account
            return await self.find_ledger(key_filter, session=session)

    async def update_ledger(self, ledger_id, expected_revision, fields, session=None):
        with driver_errors("LedgerAccount", ledger_id):
            result = await self.db.ledger_accounts.update_one(
                {"_id": ledger_id, "revision": expected_revision},
                {"$set": fields, "$inc": {"revision": 1}},
                session=session
            )
        if result.matched_count == 0:
            raise ConcurrencyConflictError("LedgerAccount", ledger_id, f"revision {expected_revision} is stale")

    async def increment_sequence(self, scope, session=None):
        with driver_errors("SequenceCounter", scope):
            result = await self.db.document_sequences.find_one_and_update(
                {"_id": scope},
                {
                    "$inc": {"current_value": 1},
                    "$set": {"updated_at": datetime.utcnow()},
                    "$setOnInsert": {"created_at": datetime.utcnow()}
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=session
            )
        return result["current_value"]

    async def count_versions(self, entity_id, session=None):
        with driver_errors("Version", entity_id):
            return await self.db.entity_versions.count_documents({"entity_id": entity_id}, session=session)

    async def insert_version(self, doc, session=None):
        with driver_errors("Version", doc.get("entity_id")):
            await self.db.entity_versions.insert_one(dict(doc), session=session)

    async def find_versions(self, entity_id, session=None):
        with driver_errors("Version", entity_id):
            cursor = self.db.entity_versions.find({"entity_id": entity_id}, session=session).sort("version_number", 1)
            return await cursor.to_list(length=None)

    async def find_version(self, entity_id, version_number, session=None):
        with driver_errors("Version", entity_id):
            return await self.db.entity_versions.find_one(
                {"entity_id": entity_id, "version_number": version_number},
                session=session
            )

    async def get_approvers(self, doc_type, session=None):
        with driver_errors("WorkflowSettings", doc_type):
            settings = await self.db.workflow_settings.find_one({"_id": doc_type}, session=session)
        return list(settings.get("approver_ids") or []) if settings else None

    async def set_approvers(self, doc_type, approver_ids):
        with driver_errors("WorkflowSettings", doc_type):
            await self.db.workflow_settings.update_one(
                {"_id": doc_type},
                {"$set": {"approver_ids": list(approver_ids), "updated_at": datetime.utcnow()}},
                upsert=True
            )

    async def insert_audit(self, entry):
        with driver_errors("AuditLog", entry.get("entity_id")):
            await self.db.audit_logs.insert_one(dict(entry))

    async def insert_notifications(self, notifications):
        if not notifications:
            return
        with driver_errors("Notification"):
            await self.db.notification_outbox.insert_many([dict(n) for n in notifications])

    async def find_audit(self, filters, limit=100):
        with driver_errors("AuditLog"):
            cursor = self.db.audit_logs.find(filters).sort("timestamp", -1).limit(limit)
            return await cursor.to_list(length=limit)

    async def find_notifications(self, filters, limit=100):
        with driver_errors("Notification"):
            cursor = self.db.notification_outbox.find(filters).sort("created_at", -1).limit(limit)
            return await cursor.to_list(length=limit)


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryWorkflowRepository(WorkflowRepository):
    """
    Dict-backed store with the same contract as the MongoDB one.

    Every call is serialized on one lock (re-entrant for the task that
    holds it), so read-validate-write inside a transaction is atomic.
    Returned documents are copies; mutating them never touches the store.
    """

    COLLECTIONS = (
        "workflow_documents",
        "ledger_accounts",
        "document_sequences",
        "entity_versions",
        "workflow_settings",
        "audit_logs",
        "notification_outbox",
    )

    def __init__(self):
        self.collections: Dict[str, Dict[Any, Dict[str, Any]]] = {name: {} for name in self.COLLECTIONS}
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop = None
        self._owner = None

    def _get_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    @asynccontextmanager
    async def _locked(self):
        task = asyncio.current_task()
        if self._owner is task:
            yield
            return
        async with self._get_lock():
            self._owner = task
            try:
                yield
            finally:
                self._owner = None

    @asynccontextmanager
    async def transaction(self):
        async with self._locked():
            saved = copy.deepcopy(self.collections)
            try:
                yield object()
            except BaseException:
                self.collections = saved
                raise

    def _col(self, name: str) -> Dict[Any, Dict[str, Any]]:
        return self.collections[name]

    # documents

    async def find_document(self, doc_id, session=None):
        async with self._locked():
            doc = self._col("workflow_documents").get(doc_id)
            return copy.deepcopy(doc) if doc else None

    async def find_documents(self, filters, limit=100, session=None):
        async with self._locked():
            return self._find("workflow_documents", filters, limit, "created_at")

    async def insert_document(self, doc, session=None):
        async with self._locked():
            documents = self._col("workflow_documents")
            if doc["_id"] in documents:
                raise ConcurrencyConflictError("WorkflowDocument", doc["_id"], "duplicate key")
            documents[doc["_id"]] = copy.deepcopy(doc)

    async def update_document(self, doc_id, expected_revision, set_fields, push_history=None, session=None):
        async with self._locked():
            doc = self._col("workflow_documents").get(doc_id)
            if doc is None or doc.get("revision", 0) != expected_revision:
                raise ConcurrencyConflictError("WorkflowDocument", doc_id, f"revision {expected_revision} is stale")
            doc.update(copy.deepcopy(set_fields))
            doc["updated_at"] = datetime.utcnow()
            doc["revision"] = expected_revision + 1
            if push_history:
                doc.setdefault("approval_history", []).extend(copy.deepcopy(push_history))

    async def delete_document(self, doc_id, expected_revision, session=None):
        async with self._locked():
            documents = self._col("workflow_documents")
            doc = documents.get(doc_id)
            if doc is None or doc.get("revision", 0) != expected_revision:
                raise ConcurrencyConflictError("WorkflowDocument", doc_id, f"revision {expected_revision} is stale")
            del documents[doc_id]

    async def count_amendments(self, purchase_order_id, session=None):
        async with self._locked():
            return sum(
                1 for d in self._col("workflow_documents").values()
                if d.get("doc_type") == "PO_AMENDMENT"
                and (d.get("payload") or {}).get("purchase_order_id") == purchase_order_id
            )

    # ledger

    def _ledger_match(self, key_filter):
        for doc in self._col("ledger_accounts").values():
            if all(doc.get(k) == v for k, v in key_filter.items()):
                return doc
        return None

    async def find_ledger(self, key_filter, session=None):
        async with self._locked():
            doc = self._ledger_match(key_filter)
            return copy.deepcopy(doc) if doc else None

    async def upsert_ledger(self, key_filter, seed, session=None):
        async with self._locked():
            doc = self._ledger_match(key_filter)
            if doc is None:
                doc = {**copy.deepcopy(seed), **key_filter, "_id": new_id()}
                self._col("ledger_accounts")[doc["_id"]] = doc
            return copy.deepcopy(doc)

    async def update_ledger(self, ledger_id, expected_revision, fields, session=None):
        async with self._locked():
            doc = self._col("ledger_accounts").get(ledger_id)
            if doc is None or doc.get("revision", 0) != expected_revision:
                raise ConcurrencyConflictError("LedgerAccount", ledger_id, f"revision {expected_revision} is stale")
            doc.update(copy.deepcopy(fields))
            doc["revision"] = expected_revision + 1

    # sequences

    async def increment_sequence(self, scope, session=None):
        async with self._locked():
            counters = self._col("document_sequences")
            counter = counters.setdefault(scope, {"_id": scope, "current_value": 0, "created_at": datetime.utcnow()})
            counter["current_value"] += 1
            counter["updated_at"] = datetime.utcnow()
            return counter["current_value"]

    # versions

    async def count_versions(self, entity_id, session=None):
        async with self._locked():
            return sum(1 for (eid, _) in self._col("entity_versions") if eid == entity_id)

    async def insert_version(self, doc, session=None):
        async with self._locked():
            key = (doc["entity_id"], doc["version_number"])
            versions = self._col("entity_versions")
            if key in versions:
                raise ConcurrencyConflictError("Version", doc["entity_id"], "duplicate key")
            versions[key] = copy.deepcopy(doc)

    async def find_versions(self, entity_id, session=None):
        async with self._locked():
            found = [v for (eid, _), v in self._col("entity_versions").items() if eid == entity_id]
            found.sort(key=lambda v: v["version_number"])
            return copy.deepcopy(found)

    async def find_version(self, entity_id, version_number, session=None):
        async with self._locked():
            doc = self._col("entity_versions").get((entity_id, version_number))
            return copy.deepcopy(doc) if doc else None

    # settings

    async def get_approvers(self, doc_type, session=None):
        async with self._locked():
            settings = self._col("workflow_settings").get(doc_type)
            return list(settings["approver_ids"]) if settings else None

    async def set_approvers(self, doc_type, approver_ids):
        async with self._locked():
            self._col("workflow_settings")[doc_type] = {
                "_id": doc_type,
                "approver_ids": list(approver_ids),
                "updated_at": datetime.utcnow(),
            }

    # side effects

    async def insert_audit(self, entry):
        async with self._locked():
            entry_id = new_id()
            self._col("audit_logs")[entry_id] = {**copy.deepcopy(entry), "_id": entry_id}

    async def insert_notifications(self, notifications):
        async with self._locked():
            for notification in notifications:
                notification_id = new_id()
                self._col("notification_outbox")[notification_id] = {**copy.deepcopy(notification), "_id": notification_id}

    def _find(self, collection, filters, limit, sort_field):
        matches = [d for d in self._col(collection).values() if all(d.get(k) == v for k, v in filters.items())]
        matches.sort(key=lambda d: d.get(sort_field) or datetime.min, reverse=True)
        return copy.deepcopy(matches[:limit])

    async def find_audit(self, filters, limit=100):
        async with self._locked():
            return self._find("audit_logs", filters, limit, "timestamp")

    async def find_notifications(self, filters, limit=100):
        async with self._locked():
            return self._find("notification_outbox", filters, limit, "created_at")
