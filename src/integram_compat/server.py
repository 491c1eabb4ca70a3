import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
from integram_compat.api.exceptions import LegacyError
from integram_compat.api.legacy import legacy_router
from integram_compat.api.responses import legacy_error_response
from integram_compat.database import init_store
from integram_compat.schema import seed_rows
from integram_compat.settings import settings

logger = logging.getLogger(__name__)

def startup_logic():
    store = init_store()

    # the "my" registry has to exist for registration and _new_db
    if not store.exists("my"):
        store.create("my", seed_rows("my"))
        logger.info("Created database registry my")

@asynccontextmanager
async def lifespan(app: FastAPI):

    if settings.DEBUG_MODE == "production":
        startup_logic()
    else:
        init_store()

    yield

app = FastAPI(lifespan=lifespan)

origins = [
    "*"
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

async def legacy_exception_handler(request: Request, exc: Exception):
    return legacy_error_response(request, exc)

app.add_exception_handler(LegacyError, legacy_exception_handler)
app.add_exception_handler(SQLAlchemyError, legacy_exception_handler)
app.add_exception_handler(Exception, legacy_exception_handler)

@app.head("/", status_code=204)
def get_status_head():
    return

app.include_router(
    legacy_router,
    tags=["legacy"]
)
