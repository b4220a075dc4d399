"""
FastAPI layer exposing background removal and the cloud gallery.

Endpoints:
 - GET /health
 - POST /jobs
 - GET /jobs/{job_id}
 - POST /jobs/{job_id}/process
 - GET /jobs/{job_id}/download
 - POST /jobs/{job_id}/save
 - GET /images
 - DELETE /images/{image_id}
 - GET /me

Requests may carry `Authorization: Bearer <token>`. Anonymous callers can
remove backgrounds for free; saving, the gallery and the profile need a
signed-in user.
"""

from __future__ import annotations

from functools import lru_cache
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Response, UploadFile
from pydantic import BaseModel

from . import config
from .errors import (
    AuthenticationError,
    ConfigurationError,
    DeletionError,
    InvalidImageError,
    JobStateError,
    LedgerError,
    MetadataError,
)
from .gallery import Gallery
from .identity import Identity, RestIdentityResolver, SessionContext
from .imaging import download_filename, encode_png
from .jobs import JobRegistry
from .ledger import CreditLedger, RestCreditLedger
from .metadata import ImageRecord, MetadataStore, RestMetadataStore
from .pipeline import Failure, FailureKind, JobState, Orchestrator, ProcessingJob
from .rest import RestClient
from .segmentation import SegmentationProvider, TorchvisionPersonSegmenter
from .storage import ObjectStorage, S3ObjectStorage

settings = config.get_settings()
logging.basicConfig(
    level=logging.DEBUG if settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Background Removal Service", version="0.1.0")

FAILURE_STATUS = {
    FailureKind.INPUT: 400,
    FailureKind.INSUFFICIENT_CREDITS: 402,
    FailureKind.PROVIDER: 500,
    FailureKind.PERSISTENCE: 502,
    FailureKind.LEDGER: 502,
}


class FailureModel(BaseModel):
    kind: str
    message: str


class JobResponse(BaseModel):
    jobId: str
    state: str
    progress: int
    width: int
    height: int
    debited: bool
    processingTimeMs: Optional[int] = None
    failure: Optional[FailureModel] = None
    warnings: List[FailureModel] = []
    savedImageId: Optional[str] = None


class ImageResponse(BaseModel):
    id: Optional[str] = None
    title: str
    originalImageUrl: str
    processedImageUrl: str
    fileSize: Optional[int] = None
    processingTime: Optional[int] = None
    createdAt: Optional[str] = None


class ProfileResponse(BaseModel):
    userId: str
    credits: int
    imageCount: int


def _failure_model(failure: Failure) -> FailureModel:
    return FailureModel(kind=failure.kind.value, message=failure.message)


def _job_response(job: ProcessingJob) -> JobResponse:
    return JobResponse(
        jobId=job.job_id,
        state=job.state.value,
        progress=job.progress,
        width=job.image.width,
        height=job.image.height,
        debited=job.debited,
        processingTimeMs=job.processing_time_ms,
        failure=_failure_model(job.failure) if job.failure else None,
        warnings=[_failure_model(w) for w in job.warnings],
        savedImageId=job.saved_record.id if job.saved_record else None,
    )


def _image_response(record: ImageRecord) -> ImageResponse:
    return ImageResponse(
        id=record.id,
        title=record.title,
        originalImageUrl=record.original_image_url,
        processedImageUrl=record.processed_image_url,
        fileSize=record.file_size,
        processingTime=record.processing_time,
        createdAt=record.created_at,
    )


def _raise_for_failure(job: ProcessingJob) -> None:
    if job.failure is None:
        return
    raise HTTPException(
        status_code=FAILURE_STATUS.get(job.failure.kind, 500),
        detail={"jobId": job.job_id, "kind": job.failure.kind.value, "message": job.failure.message},
    )


# Collaborators are built once per process and replaced in tests through
# `app.dependency_overrides`.


@lru_cache()
def get_provider() -> SegmentationProvider:
    return TorchvisionPersonSegmenter()


@lru_cache()
def get_registry() -> JobRegistry:
    return JobRegistry(settings.job_registry_size)


@lru_cache()
def get_rest_client() -> Optional[RestClient]:
    if not settings.backend_configured:
        logger.info("Backend not configured; credits, auth and gallery are disabled")
        return None
    return RestClient.from_settings(settings)


def get_ledger(client: Optional[RestClient] = Depends(get_rest_client)) -> Optional[CreditLedger]:
    return RestCreditLedger(client) if client else None


def get_metadata_store(client: Optional[RestClient] = Depends(get_rest_client)) -> Optional[MetadataStore]:
    return RestMetadataStore(client) if client else None


@lru_cache()
def get_storage() -> Optional[ObjectStorage]:
    if not settings.storage_configured:
        return None
    return S3ObjectStorage.from_settings(settings)


def get_identity(
    authorization: Optional[str] = Header(None),
    client: Optional[RestClient] = Depends(get_rest_client),
) -> Optional[Identity]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Expected a Bearer token")
    if client is None:
        raise HTTPException(status_code=503, detail="Authentication is not configured")
    try:
        return RestIdentityResolver(client).resolve(token.strip())
    except AuthenticationError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


def require_identity(identity: Optional[Identity] = Depends(get_identity)) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Sign in required")
    return identity


def get_gallery(
    storage: Optional[ObjectStorage] = Depends(get_storage),
    metadata: Optional[MetadataStore] = Depends(get_metadata_store),
    ledger: Optional[CreditLedger] = Depends(get_ledger),
) -> Gallery:
    if storage is None or metadata is None:
        raise HTTPException(status_code=503, detail="Cloud storage is not configured")
    return Gallery(storage, metadata, ledger=ledger, settings=settings)


def get_orchestrator(
    identity: Optional[Identity] = Depends(get_identity),
    provider: SegmentationProvider = Depends(get_provider),
    ledger: Optional[CreditLedger] = Depends(get_ledger),
    storage: Optional[ObjectStorage] = Depends(get_storage),
    metadata: Optional[MetadataStore] = Depends(get_metadata_store),
):
    orchestrator = Orchestrator(
        provider,
        SessionContext(identity),
        ledger=ledger,
        storage=storage,
        metadata=metadata,
        settings=settings,
    )
    try:
        yield orchestrator
    finally:
        orchestrator.close()


def _get_job(job_id: str, registry: JobRegistry) -> ProcessingJob:
    job = registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Unknown job")
    return job


def _get_owned_job(job_id: str, registry: JobRegistry, identity: Optional[Identity]) -> ProcessingJob:
    job = _get_job(job_id, registry)
    if job.identity != identity:
        raise HTTPException(status_code=403, detail="Job belongs to a different user")
    return job


def _run(orchestrator: Orchestrator, job: ProcessingJob) -> ProcessingJob:
    try:
        return orchestrator.process(job)
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ConfigurationError as exc:
        logger.exception("Processing misconfigured: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/jobs", response_model=JobResponse)
def create_job(
    file: UploadFile = File(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    registry: JobRegistry = Depends(get_registry),
):
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="File must be an image")
    image_bytes = file.file.read()
    try:
        job = orchestrator.create_job(
            image_bytes,
            source_name=file.filename or "image.png",
            content_type=file.content_type,
        )
    except InvalidImageError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    registry.add(job)
    _raise_for_failure(_run(orchestrator, job))
    return _job_response(job)


@app.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    registry: JobRegistry = Depends(get_registry),
):
    return _job_response(_get_owned_job(job_id, registry, identity))


@app.post("/jobs/{job_id}/process", response_model=JobResponse)
def retry_job(
    job_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_owned_job(job_id, registry, orchestrator.identity)
    _raise_for_failure(_run(orchestrator, job))
    return _job_response(job)


@app.get("/jobs/{job_id}/download")
def download_job(
    job_id: str,
    identity: Optional[Identity] = Depends(get_identity),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_owned_job(job_id, registry, identity)
    if job.state is not JobState.DONE or job.result is None:
        raise HTTPException(status_code=409, detail=f"Job is {job.state.value}")
    return Response(
        content=encode_png(job.result),
        media_type="image/png",
        headers={"Content-Disposition": f'attachment; filename="{download_filename()}"'},
    )


@app.post("/jobs/{job_id}/save", response_model=ImageResponse)
def save_job(
    job_id: str,
    identity: Identity = Depends(require_identity),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    registry: JobRegistry = Depends(get_registry),
):
    job = _get_job(job_id, registry)
    try:
        orchestrator.save(job)
    except AuthenticationError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    _raise_for_failure(job)
    return _image_response(job.saved_record)


@app.get("/images", response_model=List[ImageResponse])
def list_images(identity: Identity = Depends(require_identity), gallery: Gallery = Depends(get_gallery)):
    try:
        records = gallery.list_images(identity.user_id)
    except MetadataError as exc:
        logger.exception("Listing images failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not load images") from exc
    return [_image_response(r) for r in records]


@app.delete("/images/{image_id}", status_code=204)
def delete_image(
    image_id: str,
    identity: Identity = Depends(require_identity),
    gallery: Gallery = Depends(get_gallery),
):
    try:
        record = gallery.get_image(identity.user_id, image_id)
    except MetadataError as exc:
        raise HTTPException(status_code=502, detail="Could not load image") from exc
    if record is None:
        raise HTTPException(status_code=404, detail="Unknown image")
    try:
        gallery.delete_image(record)
    except DeletionError as exc:
        raise HTTPException(status_code=502, detail={"message": str(exc), "removed": exc.removed}) from exc
    return Response(status_code=204)


@app.get("/me", response_model=ProfileResponse)
def me(identity: Identity = Depends(require_identity), gallery: Gallery = Depends(get_gallery)):
    try:
        summary = gallery.profile_summary(identity.user_id)
    except (LedgerError, MetadataError) as exc:
        logger.exception("Profile lookup failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not load profile") from exc
    return ProfileResponse(userId=summary.user_id, credits=summary.credits, imageCount=summary.image_count)
