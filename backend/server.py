from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uuid
from contextlib import asynccontextmanager
from database import database
from routes import orders, session
from services.order_lifecycle import get_lifecycle_controller, reset_lifecycle_controller

import os
import logging
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SERVICE_NAME = os.getenv("COMPANY_NAME", "Fiordacqua") + " Orders"


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting {SERVICE_NAME} API")
    await database.connect()
    # Bind the controller to whichever store is live now
    reset_lifecycle_controller()
    get_lifecycle_controller()

    yield

    # Shutdown
    logger.info(f"Shutting down {SERVICE_NAME} API")
    pending = get_lifecycle_controller().pending_commits()
    if pending:
        logger.warning(f"{len(pending)} sent document(s) were never saved: {pending}")
    await database.close()

# Create FastAPI app
app = FastAPI(
    title=f"{SERVICE_NAME} API",
    description="Sales order documentation workflow: contract, manual, CE warranty",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(orders.router)
app.include_router(session.router)

# Root endpoint
@app.get("/api")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": "1.0.0",
        "status": "operational"
    }

# Health check
@app.get("/api/health")
async def health_check():
    return {
        "status": "healthy",
        "database": "connected" if database.get_db() is not None else "in-memory",
        "environment": os.getenv("ENVIRONMENT", "development")
    }


# Validation error handler: log request_id + errors so rejected payloads can be traced
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(errors), "request_id": request_id},
    )


def jsonable_errors(errors):
    """Pydantic v2 puts exception objects in ctx; keep only printable values."""
    cleaned = []
    for e in errors:
        e = dict(e)
        if "ctx" in e:
            e["ctx"] = {k: str(v) for k, v in e["ctx"].items()}
        e.pop("input", None)
        cleaned.append(e)
    return cleaned


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
