import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.settings import settings
from core.errors import TokenError
from infrastructure.db.sqlite import init_db
from infrastructure.web.controllers.admin_controller import router as admin_router
from infrastructure.web.controllers.token_controller import router as token_router
from infrastructure.web.errors import token_error_handler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(title="Loyalty token ledger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
def on_startup():
    init_db(settings.DB_PATH)

app.add_exception_handler(TokenError, token_error_handler)
app.include_router(token_router)
app.include_router(admin_router)
