from functools import lru_cache
from typing import List

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from config import settings
from consolidation import ConsolidationService
from contact_store import SqliteContactStore
from db_models import AddContactRequest, Contact, FinalResponse, IdentifyRequest
from errors import ConflictError, ConsolidationError
from logging_setup import get_logger, setup_logging

setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
logger = get_logger(__name__)

app = FastAPI(
    title="Bitespeed Contact Reconciliation API",
    version="1.0.0"
)


@lru_cache
def get_consolidation_service() -> ConsolidationService:
    store = SqliteContactStore(settings.DB_NAME, settings.DB_BUSY_TIMEOUT)
    return ConsolidationService(store)


@app.exception_handler(ConsolidationError)
async def consolidation_error_handler(request: Request, exc: ConsolidationError):
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message, error_type=type(exc).__name__)
    else:
        logger.info("Request rejected", path=request.url.path, error=exc.message)

    headers = {"Retry-After": "1"} if isinstance(exc, ConflictError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


@app.get("/")
async def root():
    return {"message": "Bitespeed API is up"}


# Sync endpoints run on the threadpool, one worker per request.
@app.post("/identify", response_model=FinalResponse)
def identify(
    request: IdentifyRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    contact = service.submit(request.email, request.phoneNumber)
    return FinalResponse(contact=contact)


@app.post("/add-contact")
def add_contact(
    request: AddContactRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    """Import a raw contact row, e.g. from a legacy system. No consolidation is applied."""
    contact = service.import_contact(
        email=request.email,
        phone_number=request.phoneNumber,
        linked_id=request.linkedId,
        precedence=request.linkPrecedence,
        contact_id=request.id,
    )
    return {"message": "Contact added successfully", "contact_id": contact.id}


@app.get("/contacts", response_model=List[Contact])
def list_contacts(service: ConsolidationService = Depends(get_consolidation_service)):
    return service.list_contacts()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
