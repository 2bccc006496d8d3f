#!/usr/bin/env python3
"""
MIGRATION SCRIPT: Approval Workflow Collections

Creates:
1. workflow_documents with unique document number and lookup indexes
2. ledger_accounts with unique (subject_id, resource_type, period)
3. entity_versions with unique (entity_id, version_number)
4. audit_logs and notification_outbox lookup indexes

document_sequences and workflow_settings are keyed by _id and need no
extra index.

Run: python migrations/001_workflow_indexes.py
"""

import asyncio
import os
import sys

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv

load_dotenv()

COLLECTIONS = [
    "workflow_documents",
    "ledger_accounts",
    "document_sequences",
    "entity_versions",
    "workflow_settings",
    "audit_logs",
    "notification_outbox",
]


async def run_migration():
    """Execute the workflow index migration."""

    mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017/?replicaSet=rs0')
    db_name = os.environ.get('DB_NAME', 'approval_workflows')

    print(f"Connecting to: {mongo_url}")
    print(f"Database: {db_name}")

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]

    try:
        # Test connection
        await client.admin.command('ping')
        print("✓ Connected to MongoDB")

        # Collections must exist before they are used inside a transaction
        existing = await db.list_collection_names()
        for name in COLLECTIONS:
            if name not in existing:
                await db.create_collection(name)
                print(f"✓ Created {name} collection")
            else:
                print(f"• {name} collection already exists")

        # =====================================================
        # 1. workflow_documents
        # =====================================================
        await db.workflow_documents.create_index(
            [("number", 1)],
            unique=True,
            partialFilterExpression={"number": {"$type": "string"}},
            name="idx_workflow_number_unique"
        )
        await db.workflow_documents.create_index(
            [("doc_type", 1), ("status", 1), ("created_at", -1)],
            name="idx_workflow_type_status"
        )
        await db.workflow_documents.create_index(
            [("owner_id", 1), ("created_at", -1)],
            name="idx_workflow_owner"
        )
        await db.workflow_documents.create_index(
            [("payload.purchase_order_id", 1)],
            sparse=True,
            name="idx_workflow_amendment_po"
        )
        print("✓ Created workflow_documents indexes")

        # =====================================================
        # 2. ledger_accounts
        # =====================================================
        await db.ledger_accounts.create_index(
            [("subject_id", 1), ("resource_type", 1), ("period", 1)],
            unique=True,
            name="idx_ledger_scope_unique"
        )
        print("✓ Created ledger_accounts indexes")

        # =====================================================
        # 3. entity_versions
        # =====================================================
        await db.entity_versions.create_index(
            [("entity_id", 1), ("version_number", 1)],
            unique=True,
            name="idx_version_entity_number_unique"
        )
        print("✓ Created entity_versions indexes")

        # =====================================================
        # 4. audit_logs / notification_outbox
        # =====================================================
        await db.audit_logs.create_index(
            [("entity_id", 1), ("timestamp", -1)],
            name="idx_audit_entity"
        )
        await db.notification_outbox.create_index(
            [("recipient_id", 1), ("status", 1), ("created_at", -1)],
            name="idx_notification_recipient"
        )
        print("✓ Created audit_logs / notification_outbox indexes")

        print("\n✓ Migration complete")

    except Exception as e:
        print(f"✗ Migration failed: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(run_migration())
