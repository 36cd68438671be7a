# file: main.py

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from app.config import LOG_LEVEL
from app.controllers.auth import router as auth_router
from app.controllers.listings import router as listings_router
from app.controllers.cart import router as cart_router
from app.controllers.push_tokens import router as push_tokens_router
from app.controllers.notification import router as notification_router
from app.database.connection import init_db
from app.services.storage import UPLOAD_DIR

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

app = FastAPI(title="Marketplace API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/uploads", StaticFiles(directory=str(UPLOAD_DIR)), name="uploads")

app.include_router(auth_router, prefix="/auth", tags=["auth"])
app.include_router(listings_router, prefix="/api/listings", tags=["listings"])
app.include_router(cart_router, prefix="/api/cart", tags=["cart"])
app.include_router(push_tokens_router, prefix="/api/push-tokens", tags=["push-tokens"])
app.include_router(notification_router, prefix="/api/notifications", tags=["notifications"])


@app.get("/")
async def root():
    return {"message": "Marketplace API is running"}

@app.on_event("startup")
async def startup_event():
    await init_db()
