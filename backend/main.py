import logging
import math
import os
import sys
from pathlib import Path

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

_project_root = Path(__file__).resolve().parents[1]
if str(_project_root) not in sys.path:
    sys.path.append(str(_project_root))

try:
    from backend import app_context
except ModuleNotFoundError as exc:
    if exc.name != "backend":
        raise
    import app_context  # type: ignore[no-redef]


load_dotenv()

def _parse_connect_timeout(raw_value: str) -> int:
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))

DB_CFG = dict(
    host=os.getenv("DB_HOST", "127.0.0.1"),
    port=int(os.getenv("DB_PORT", "5432")),
    dbname=os.getenv("DB_NAME", "membership_db"),
    user=os.getenv("DB_USER", "membership_user"),
    password=os.getenv("DB_PASSWORD", "membership_pass"),
    connect_timeout=_parse_connect_timeout(os.getenv("DB_CONNECT_TIMEOUT", "5")),
)

CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger("membership")


def get_conn():
    return psycopg2.connect(**DB_CFG)


app_context.configure(get_conn=get_conn)

from backend.app.routes.membership import router as membership_router

app = FastAPI(title="Membership API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(membership_router)


@app.get("/api/health")
def health() -> dict:
    return {"status": "ok"}


logger.info("Membership API configured for database %s@%s", DB_CFG["dbname"], DB_CFG["host"])
