import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .conversations import router as conversations_router
from .db import create_indexes
from .realtime import router as ws_router

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Healio Chat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.on_event("startup")
def _startup():
    create_indexes()
    logger.info("[main] store backend: %s", config.STORE_BACKEND)


@app.get("/health")
def health():
    return {"ok": True}


app.include_router(conversations_router)
app.include_router(ws_router)
