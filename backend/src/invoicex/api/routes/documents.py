"""
Document storage endpoints.

Uploads evidence to the active storage backend and serves it back by
locator for reviewers.
"""

import logging
from pathlib import PurePath
from typing import Annotated

from fastapi import APIRouter, File, HTTPException, Response, UploadFile, status

from invoicex.api.dependencies import CallerDep, ContainerDep
from invoicex.api.schemas import DocumentResponse, StorageStatusResponse
from invoicex.domain.addressing import ensure_locator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"])

ALLOWED_CONTENT_TYPES = {"application/pdf", "image/png", "image/jpeg", "image/jpg"}
ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg"}


async def read_upload(upload: UploadFile, field: str) -> tuple[bytes, str, str]:
    """
    Validate an evidence upload and read it fully.

    Returns:
        Tuple of (content, filename, mime type)

    Raises:
        HTTPException: 400 for disallowed file types or empty files
    """
    filename = upload.filename or f"{field}.pdf"
    extension = PurePath(filename).suffix.lower()
    if extension not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type for {field}: {filename}. Allowed: PDF, PNG, JPG",
        )
    if upload.content_type and upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type for {field}: {upload.content_type}. Allowed: PDF, PNG, JPG",
        )

    content = await upload.read()
    if not content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Document {field} is empty",
        )
    mime_type = upload.content_type or (
        "application/pdf" if extension == ".pdf" else f"image/{extension.lstrip('.')}"
    )
    return content, filename, mime_type


@router.post(
    "/documents",
    response_model=DocumentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Invalid or empty file"},
        502: {"description": "Storage backend failed"},
    },
)
async def upload_document(
    container: ContainerDep,
    caller: CallerDep,
    file: Annotated[UploadFile, File(description="Evidence document (PDF/image)")],
) -> DocumentResponse:
    """
    Upload a single evidence document.

    The returned locator can be attached to a pending request or used as
    a proof when renewing.
    """
    content, filename, mime_type = await read_upload(file, "file")
    document = await container.kyb.upload_document(content, filename, mime_type)
    logger.info(f"{caller} uploaded {filename} as {document.locator}")
    url = await container.documents.url_for(document.locator)
    return DocumentResponse.from_document(document, url=url)


@router.get(
    "/documents/{locator}",
    response_class=Response,
    responses={
        200: {"content": {"application/octet-stream": {}}},
        404: {"description": "No content for this locator"},
    },
)
async def get_document(locator: str, container: ContainerDep) -> Response:
    """Retrieve document bytes, verified against the locator."""
    content = await container.documents.fetch_document(ensure_locator(locator))
    return Response(content=content, media_type="application/octet-stream")


@router.get("/storage/status", response_model=StorageStatusResponse)
async def storage_status(container: ContainerDep) -> StorageStatusResponse:
    """Report which storage backend is active and whether it is configured."""
    current = container.kyb.storage_status()
    return StorageStatusResponse(
        provider=current.provider,
        configured=current.configured,
        message=current.message,
    )
