from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from typing import List

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from .routes import evolution_router  # noqa: E402

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="Affiliate Evolution API")


# allow_origins=["*"] fails with allow_credentials=True in some browsers/proxies
def resolve_cors_allow_origins() -> List[str]:
    raw = (os.getenv("CORS_ALLOW_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
    ]


CORS_ALLOW_ORIGINS = resolve_cors_allow_origins()
CORS_ALLOW_ORIGIN_REGEX = os.getenv("CORS_ALLOW_ORIGIN_REGEX") or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_origin_regex=CORS_ALLOW_ORIGIN_REGEX,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "apikey"],
)


# Healthcheck endpoint (required for Railway)
@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "affiliate-evolution"}


# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def api_health_check():
    return {"status": "healthy", "database": "supabase", "whatsapp": "evolution-api"}


api_router.include_router(evolution_router)

# Include the router in the main app
app.include_router(api_router)


@app.on_event("startup")
async def startup_event():
    logger.info("Affiliate Evolution API started successfully")
