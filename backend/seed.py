"""
Seed script for the Approval Workflow service.

Creates:
- Approver sets for every document type (workflow_settings)
- Current-year leave balances for the demo users: CASUAL 12, SICK 8
- A comp-off account per demo user (starts at 0; on-duty approvals grant into it)
- A project budget for the demo project
"""

import asyncio
from motor.motor_asyncio import AsyncIOMotorClient
from datetime import datetime
import os
from pathlib import Path
from dotenv import load_dotenv
import sys

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent))

from workflow_core.ledger import LedgerKey, LedgerService
from workflow_core.repository import MotorWorkflowRepository
from workflow_core.workflow_types import COMP_OFF, PROJECT_BUDGET, WORKFLOW_TYPES

# Load environment
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# MongoDB connection
mongo_url = os.environ['MONGO_URL']
db_name = os.environ['DB_NAME']

DEMO_APPROVERS = ["manager-1", "hr-head"]
DEMO_EMPLOYEES = ["employee-1", "employee-2", "manager-1"]
DEMO_PROJECT = "project-alpha"

LEAVE_ENTITLEMENTS = {"CASUAL": 12, "SICK": 8}
PROJECT_BUDGET_AMOUNT = 5000000


async def seed_database():
    """Seed the database with initial data"""

    client = AsyncIOMotorClient(mongo_url)
    db = client[db_name]
    repository = MotorWorkflowRepository(client, db)
    ledger = LedgerService(repository)
    year = datetime.utcnow().year

    print("🌱 Starting database seeding...")

    try:
        # ============================================
        # 1. APPROVER SETTINGS
        # ============================================
        print("👥 Configuring approvers...")

        for doc_type in WORKFLOW_TYPES:
            existing = await repository.get_approvers(doc_type)
            if existing:
                print(f"   ⚠️  {doc_type} approvers already set: {existing}. Skipping...")
                continue
            await repository.set_approvers(doc_type, DEMO_APPROVERS)
            print(f"   ✅ {doc_type}: {DEMO_APPROVERS}")

        # ============================================
        # 2. LEAVE & COMP-OFF BALANCES
        # ============================================
        print("📅 Opening leave balances...")

        for user_id in DEMO_EMPLOYEES:
            for leave_type, days in LEAVE_ENTITLEMENTS.items():
                account = await ledger.open_account(LedgerKey(user_id, leave_type, year), entitled=days)
                print(f"   ✅ {user_id} {leave_type} {year}: available {account.available}")
            await ledger.open_account(LedgerKey(user_id, COMP_OFF, year))

        # ============================================
        # 3. PROJECT BUDGET
        # ============================================
        print("💰 Opening project budget...")

        budget = await ledger.open_account(
            LedgerKey(DEMO_PROJECT, PROJECT_BUDGET, year),
            entitled=PROJECT_BUDGET_AMOUNT
        )
        print(f"   ✅ {DEMO_PROJECT} {year}: available {budget.available}")

        print("\n✅ Database seeding completed successfully!")

    except Exception as e:
        print(f"\n❌ Error during seeding: {str(e)}")
        raise
    finally:
        client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
