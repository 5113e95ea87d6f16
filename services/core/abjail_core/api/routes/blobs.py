"""Signed blob downloads.

GET /blobs/{bucket}/{key} serves evidence images and landing screenshots
for URLs produced by LocalBlobStorage.sign().
"""

from fastapi import APIRouter, HTTPException, Query, status
from fastapi.responses import Response

from abjail_core.api.deps import AppSettings, Storage
from abjail_core.infra.storage import BLOB_SCHEME, BlobNotFoundError, StorageError

router = APIRouter(prefix="/blobs", tags=["blobs"])


@router.get("/{bucket}/{key:path}", summary="Download a signed blob")
async def get_blob(
    bucket: str,
    key: str,
    storage: Storage,
    settings: AppSettings,
    expires: int = Query(...),
    sig: str = Query(..., min_length=1),
):
    if bucket not in (settings.bucket_incoming, settings.bucket_screenshots):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
    if not storage.verify(bucket, key, expires, sig):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="invalid_signature")

    ref = f"{BLOB_SCHEME}{bucket}/{key}"
    try:
        data = storage.get(ref)
    except BlobNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not_found")
    except StorageError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_reference")

    return Response(
        content=data,
        media_type=storage.content_type(ref),
        headers={"Cache-Control": "private, max-age=300"},
    )
