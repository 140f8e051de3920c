"""REST API module for the marketplace.

This module provides HTTP endpoints for:
- Allocating and inspecting order nonces
- Creating and cancelling listings
- Placing, accepting and withdrawing bids
- Delivering verified chain events for reconciliation
- Transaction audit records and collection statistics
- Real-time outcome notifications via WebSocket
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings_conf
from notifications import CompositeDispatcher, LoggingDispatcher

# Configure logging
logging.basicConfig(
    level=settings_conf['log_level'],
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Lifecycle management
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("Initializing API...")
    # Don't initialize DB here since it's handled in main.py
    if app.state.chain_fetcher is None:
        logger.info("No chain log fetcher configured, event refresh is disabled")
    yield
    logger.info("Shutting down API...")

# Create FastAPI app
app = FastAPI(
    title="Collectible Marketplace API",
    description="Nonce allocation, listings, bids and chain event reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, replace with specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and include all routers
from .nonces import router as nonces_router
from .listings import router as listings_router
from .bids import router as bids_router
from .events import router as events_router
from .transactions import router as transactions_router
from .collections import router as collections_router
from .websockets import router as websocket_router, manager as websocket_manager, WebSocketDispatcher

# Outcome notifications go to the log and to the recipient's open sockets
app.state.notifier = CompositeDispatcher([
    LoggingDispatcher(),
    WebSocketDispatcher(websocket_manager)
])
# Set by the deployment to enable POST /events/{method}/{tx_hash}/refresh
app.state.chain_fetcher = None

# Include all routers
app.include_router(nonces_router)
app.include_router(listings_router)
app.include_router(bids_router)
app.include_router(events_router)
app.include_router(transactions_router)
app.include_router(collections_router)
app.include_router(websocket_router)


@app.get("/health")
async def health():
    """Liveness check."""
    return {"status": "ok"}
