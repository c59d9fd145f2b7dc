# portal/main.py
import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portal.core.config import settings
from portal.routes import account, community, votes, wallet, welcome
from portal.routes import auth as auth_routes
from portal.services.gcp_clients import get_firestore_client

logging.basicConfig(stream=sys.stderr, level=settings.log_level.upper())
log = logging.getLogger("portal")

app = FastAPI(title="El Paso Verse Portal")

app.include_router(auth_routes.router, prefix="/api")
app.include_router(account.router,     prefix="/api")
app.include_router(community.router,   prefix="/api")
app.include_router(votes.router,       prefix="/api")
app.include_router(wallet.router,      prefix="/api")
app.include_router(welcome.router,     prefix="/api")


@app.get("/api/healthz")
def healthz():
    return {"ok": True, "firestore": get_firestore_client() is not None}


@app.get("/")
def root():
    return {"ok": True, "service": "elpaso-portal"}


_origins = ["http://localhost:8080", "http://localhost:5173", "https://elpasoverse.com", "https://www.elpasoverse.com"]
if settings.ui_origin and settings.ui_origin != "*" and settings.ui_origin not in _origins:
    _origins.append(settings.ui_origin)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
