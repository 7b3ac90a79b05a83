import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app import config
from app.routers import admin, appointments, auth, leads, notifications, quotes, requests
from app.services.database import database
from app.services.email_sender import email_sender
from app.services.push_sender import push_sender

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="DoneEZ Marketplace API", version="0.1.0")

cors_origins = config.env_csv("CORS_ORIGINS", "*")
allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

trusted_hosts = config.env_csv("TRUSTED_HOSTS", "*")
if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

for module in (auth, requests, leads, quotes, appointments, admin, notifications):
    app.include_router(module.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    with database.read() as conn:
        conn.execute("SELECT 1").fetchone()
    return {
        "status": "ready",
        "email_configured": email_sender.configured,
        "push_configured": push_sender.enabled,
    }
