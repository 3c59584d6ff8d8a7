from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import os
import logging
from pathlib import Path
from datetime import datetime

from audit_service import AuditService
from settlement_routes import create_settlement_services, create_settlement_routes

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MongoDB connection
mongo_url = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
client = AsyncIOMotorClient(mongo_url)
db = client[os.environ.get('DB_NAME', 'dealer_settlement')]

# auto = detect replica set / mongos, disabled = always sequential writes
TRANSACTION_MODE = os.environ.get('TRANSACTION_MODE', 'auto')

# Initialize services
audit_service = AuditService(db)
settlement_services = create_settlement_services(client, db, audit_service, TRANSACTION_MODE)

# Create the main app
app = FastAPI(
    title="Dealership Settlement Core",
    version="2.0.0",
    description="Booking payment ledger, balance reconciliation and subdealer commissions"
)

# Create router with /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow(),
        "version": "2.0.0",
        "transactions": await settlement_services.scope.supports_transactions()
    }


# Include router in main app
app.include_router(api_router)

# Include settlement routes
app.include_router(create_settlement_routes(settlement_services))

# CORS middleware (comma-separated CORS_ORIGINS, default any)
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",")],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def create_indexes():
    await settlement_services.create_indexes()
    logger.info(f"Settlement core started (transaction mode: {TRANSACTION_MODE})")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
