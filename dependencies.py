import logging
from typing import Callable

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

import config
from local_store import PrescriptionStore
from prescription_service import PrescriptionAssembler, prescription_id_generator

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name=config.API_KEY_NAME, auto_error=False)


async def get_api_key(api_key_header: str = Security(api_key_header)):
    """
    Dependency function to verify the API key.
    Retrieves the API key from the X-API-KEY header and compares it
    to the expected API_KEY from environment variables.
    """
    expected = config.get_api_key_setting()
    if not expected:
        # This should not happen in production if configured correctly
        logger.error("API_KEY is not configured; rejecting request.")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="API Key not configured on the server.",
        )

    if api_key_header == expected:
        return api_key_header
    else:
        logger.warning("Request rejected: missing or invalid API key.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )


def get_store(request: Request) -> PrescriptionStore:
    """The store opened at application startup."""
    store = getattr(request.app.state, "store", None)
    if store is None or not store.is_open:
        logger.error("Prescription store is not available.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Prescription storage is not available.",
        )
    return store


def get_id_generator() -> Callable[[], str]:
    return prescription_id_generator


def get_assembler(
    store: PrescriptionStore = Depends(get_store),
    id_generator: Callable[[], str] = Depends(get_id_generator),
) -> PrescriptionAssembler:
    return PrescriptionAssembler(store, id_generator=id_generator)
