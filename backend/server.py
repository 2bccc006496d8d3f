from fastapi import FastAPI, HTTPException, status
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError
import os
import logging
from pathlib import Path

from audit_service import AuditService
from notification_service import NotificationDispatcher
from workflow_core.orchestrator import WorkflowOrchestrator
from workflow_core.repository import MotorWorkflowRepository
from workflow_routes import workflow_router

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection (transactions need a replica set)
mongo_url = os.environ['MONGO_URL']
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ['DB_NAME']]

# Initialize services
repository = MotorWorkflowRepository(client, db)
audit_service = AuditService(repository)
notification_dispatcher = NotificationDispatcher(repository)
orchestrator = WorkflowOrchestrator(repository, notifier=notification_dispatcher, audit=audit_service)

# Create the main app
app = FastAPI(
    title="Approval Workflow Service",
    version="1.0.0",
    description="State-machine-gated approval workflows with ledger, numbering and version history"
)

app.state.orchestrator = orchestrator
app.state.audit_service = audit_service
app.state.notification_dispatcher = notification_dispatcher

app.include_router(workflow_router)


@app.get("/api/health")
async def health():
    try:
        await client.admin.command('ping')
    except PyMongoError as e:
        logger.error(f"Health check failed: {str(e)}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable")
    return {"status": "ok", "database": os.environ['DB_NAME']}


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
