"""
High-level background-removal pipeline.

`Orchestrator.process` is the main entry point used by both the HTTP API
and the local runner. It keeps orchestration simple:
credit precheck -> load model -> segment -> composite -> debit credits.
`Orchestrator.save` persists a finished job on explicit request.

Every collaborator failure is caught here, logged, and recorded on the job
as a named `Failure`; nothing is retried automatically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import PurePath
import time
from typing import Callable, List, Optional
import uuid

from . import config
from .compositor import apply_mask
from .errors import (
    AuthenticationError,
    ConfigurationError,
    JobStateError,
    LedgerError,
    MaskShapeError,
    PersistenceError,
)
from .identity import Identity, SessionContext
from .imaging import ImageBuffer, decode_image, encode_png
from .ledger import CreditLedger
from .metadata import ImageRecord, MetadataStore
from .segmentation import SegmentationProvider
from .segmentation_config import SegmentationConfig
from .storage import ObjectStorage

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    IDLE = "idle"
    LOADING_MODEL = "loading_model"
    SEGMENTING = "segmenting"
    COMPOSITING = "compositing"
    DEBITING_CREDITS = "debiting_credits"
    DONE = "done"
    PERSISTING = "persisting"
    FAILED = "failed"


class FailureKind(str, Enum):
    INPUT = "input"
    PROVIDER = "provider"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    LEDGER = "ledger"
    PERSISTENCE = "persistence"


@dataclass
class Failure:
    kind: FailureKind
    message: str


@dataclass
class ProcessingJob:
    image: ImageBuffer
    source_bytes: bytes
    source_name: str = "image.png"
    content_type: str = "application/octet-stream"
    identity: Optional[Identity] = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: JobState = JobState.IDLE
    progress: int = 0
    result: Optional[ImageBuffer] = None
    failure: Optional[Failure] = None
    warnings: List[Failure] = field(default_factory=list)
    debited: bool = False
    processing_time_ms: Optional[int] = None
    saved_record: Optional[ImageRecord] = None

    @property
    def title(self) -> str:
        return PurePath(self.source_name).name.split(".")[0] or "image"


ProgressListener = Callable[[ProcessingJob], None]


class Orchestrator:
    def __init__(
        self,
        provider: SegmentationProvider,
        session: SessionContext,
        ledger: Optional[CreditLedger] = None,
        storage: Optional[ObjectStorage] = None,
        metadata: Optional[MetadataStore] = None,
        settings: Optional[config.Settings] = None,
        segmentation_config: Optional[SegmentationConfig] = None,
        progress_listener: Optional[ProgressListener] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider = provider
        self.ledger = ledger
        self.storage = storage
        self.metadata = metadata
        self.settings = settings or config.get_settings()
        self.segmentation_config = segmentation_config or SegmentationConfig.from_settings(self.settings)
        self.progress_listener = progress_listener
        self.clock = clock
        self._identity = session.identity
        self._unsubscribe = session.subscribe(self._on_identity_change)

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    def _on_identity_change(self, identity: Optional[Identity]) -> None:
        self._identity = identity

    def close(self) -> None:
        self._unsubscribe()

    def create_job(
        self,
        image_bytes: bytes,
        source_name: str = "image.png",
        content_type: str = "application/octet-stream",
    ) -> ProcessingJob:
        """
        Decode an upload into a new idle job owned by the current identity.

        Raises:
            InvalidImageError: when the bytes are not a decodable image.
        """
        image = decode_image(image_bytes, self.settings.max_long_edge)
        return ProcessingJob(
            image=image,
            source_bytes=image_bytes,
            source_name=source_name,
            content_type=content_type,
            identity=self._identity,
        )

    def _advance(self, job: ProcessingJob, state: JobState, progress: Optional[int] = None) -> None:
        job.state = state
        if progress is not None:
            job.progress = max(job.progress, progress)
        logger.debug("Job %s -> %s (%d%%)", job.job_id, state.value, job.progress)
        if self.progress_listener is not None:
            self.progress_listener(job)

    def _fail(self, job: ProcessingJob, state: JobState, kind: FailureKind, message: str) -> ProcessingJob:
        job.failure = Failure(kind=kind, message=message)
        self._advance(job, state)
        return job

    def _precheck_credits(self, job: ProcessingJob) -> Optional[str]:
        """Return a blocking message when the identity cannot pay, else None."""
        if self.ledger is None:
            raise ConfigurationError("A credit ledger is required for signed-in users")
        user_id = job.identity.user_id
        cost = self.settings.credit_cost
        try:
            balance = self.ledger.get_balance(user_id)
        except LedgerError as exc:
            logger.warning("Balance lookup failed for %s: %s", user_id, exc)
            return f"Could not verify credits for {user_id}"
        if balance < cost:
            return f"Insufficient credits: {balance} available, {cost} required"
        return None

    def process(self, job: ProcessingJob) -> ProcessingJob:
        """
        Run segmentation and compositing for `job`.

        Signed-in jobs are blocked in IDLE when the balance is short and are
        charged only after the result exists. Provider and input failures
        leave the job FAILED; a later call may retry it.
        """
        if job.state not in {JobState.IDLE, JobState.FAILED}:
            raise JobStateError(f"Job {job.job_id} is {job.state.value}; cannot process again")

        job.failure = None
        job.progress = 0
        job.state = JobState.IDLE

        if job.identity is not None:
            blocked = self._precheck_credits(job)
            if blocked:
                logger.info("Job %s blocked for %s: %s", job.job_id, job.identity.user_id, blocked)
                return self._fail(job, JobState.IDLE, FailureKind.INSUFFICIENT_CREDITS, blocked)

        started = time.perf_counter()
        self._advance(job, JobState.LOADING_MODEL, 10)
        try:
            handle = self.provider.load(self.segmentation_config)
            self._advance(job, JobState.SEGMENTING, 40)
            segmentation_map = self.provider.infer(handle, job.image)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Segmentation failed for job %s", job.job_id)
            return self._fail(job, JobState.FAILED, FailureKind.PROVIDER, f"Background removal failed: {exc}")

        self._advance(job, JobState.COMPOSITING, 70)
        try:
            job.result = apply_mask(job.image, segmentation_map)
        except MaskShapeError as exc:
            logger.error("Job %s: %s", job.job_id, exc)
            return self._fail(job, JobState.FAILED, FailureKind.INPUT, str(exc))

        job.processing_time_ms = int((time.perf_counter() - started) * 1000)
        self._advance(job, JobState.DONE, 100)
        logger.info("Job %s done in %d ms", job.job_id, job.processing_time_ms)

        if job.identity is not None:
            self._debit(job)
        return job

    def _debit(self, job: ProcessingJob) -> None:
        """Charge for a produced result. Failures never revert the result."""
        user_id = job.identity.user_id
        cost = self.settings.credit_cost
        self._advance(job, JobState.DEBITING_CREDITS)
        try:
            self.ledger.decrement(user_id, cost)
            job.debited = True
            self.ledger.append_usage(user_id, self.settings.usage_action, cost)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Credit debit failed for %s on job %s: %s", user_id, job.job_id, exc)
            job.warnings.append(Failure(kind=FailureKind.LEDGER, message=f"Credit debit failed: {exc}"))
        finally:
            self._advance(job, JobState.DONE)

    def save(self, job: ProcessingJob) -> ProcessingJob:
        """
        Upload the original and processed images, then write the metadata record.

        Any failure aborts before the record is written and returns the job to
        DONE with a persistence failure; an already uploaded object is left in
        place.
        """
        if job.state is not JobState.DONE or job.result is None:
            raise JobStateError(f"Job {job.job_id} is {job.state.value}; nothing to save")
        if self._identity is None:
            raise AuthenticationError("Sign in to save images")
        if job.identity != self._identity:
            raise AuthenticationError("Job belongs to a different user")
        if job.saved_record is not None:
            raise JobStateError(f"Job {job.job_id} is already saved as {job.saved_record.id}")
        if self.storage is None or self.metadata is None:
            raise ConfigurationError("Cloud persistence is not configured")

        job.failure = None
        self._advance(job, JobState.PERSISTING)
        try:
            job.saved_record = self._persist(job)
            logger.info("Job %s saved as image %s", job.job_id, job.saved_record.id)
        except PersistenceError as exc:
            logger.exception("Saving job %s failed", job.job_id)
            if exc.orphaned_keys:
                logger.warning("Orphaned objects left in storage: %s", ", ".join(exc.orphaned_keys))
            job.failure = Failure(kind=FailureKind.PERSISTENCE, message=str(exc))
        finally:
            self._advance(job, JobState.DONE)
        return job

    def _persist(self, job: ProcessingJob) -> ImageRecord:
        user_id = job.identity.user_id
        stamp = int(self.clock() * 1000)
        original_bucket = self.settings.original_bucket
        processed_bucket = self.settings.processed_bucket
        original_key = f"{user_id}/{stamp}_original_{PurePath(job.source_name).name}"
        processed_key = f"{user_id}/{stamp}_processed.png"
        uploaded: List[str] = []

        try:
            self.storage.upload(original_bucket, original_key, job.source_bytes, job.content_type)
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError("original_upload", str(exc)) from exc
        uploaded.append(f"{original_bucket}/{original_key}")

        png_bytes = encode_png(job.result)
        try:
            self.storage.upload(processed_bucket, processed_key, png_bytes, "image/png")
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError("processed_upload", str(exc), uploaded) from exc
        uploaded.append(f"{processed_bucket}/{processed_key}")

        try:
            original_url = self.storage.get_public_url(original_bucket, original_key)
            processed_url = self.storage.get_public_url(processed_bucket, processed_key)
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError("public_url", str(exc), uploaded) from exc

        record = ImageRecord(
            user_id=user_id,
            title=job.title,
            original_image_url=original_url,
            processed_image_url=processed_url,
            file_size=len(png_bytes),
            processing_time=job.processing_time_ms,
        )
        try:
            return self.metadata.insert(record)
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError("metadata", str(exc), uploaded) from exc
