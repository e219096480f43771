"""Download, verify and upload ticket attachments to a chat thread.

Why this exists:
- Attachment URLs come from an external system and the bytes behind them
  are untrusted. Declared sizes and content types can lie, hosts can stall,
  and filenames can carry path tricks.

How it works:
- Every file is pre-checked against its declared metadata, downloaded with a
  hard byte ceiling enforced while streaming, sniffed by magic number,
  cross-checked against its declared MIME type and given a safe filename.
- A rejected file records a ``RejectionReason`` and never stops the batch.
- Accepted files are uploaded together in one chat message, retried with
  backoff. Buffers come from a small ``BufferPool``.

Example:
    >>> # pipeline = AttachmentPipeline(discord, HttpxFileSource(), AsyncioScheduler())
    >>> # result = await pipeline.process_batch(thread, [AttachmentDescriptor(source_url=url)])
    >>> # result.summary()
"""

from __future__ import annotations

import asyncio
import gc
import logging
import random
import re
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional, Sequence

import httpx
from pydantic import BaseModel, Field

from ticketbridge.errors import AttachmentUploadError
from ticketbridge.metrics import ATTACHMENT_BYTES, ATTACHMENT_UPLOAD_TOTAL, ATTACHMENTS_TOTAL
from ticketbridge.models import OutboundFile, OutboundMessage
from ticketbridge.ports import ChatPlatform, RemoteFileSource, ThreadHandle
from ticketbridge.retry import RetryPolicy, classify_failure, with_retry
from ticketbridge.scheduler import Scheduler


logger = logging.getLogger(__name__)

MAX_FILENAME_LENGTH = 255
OCTET_STREAM = "application/octet-stream"

SUPPORTED_MIME_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})
_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}
_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/gif": ".gif", "image/webp": ".webp"}

DANGEROUS_EXTENSIONS = frozenset({"exe", "bat", "cmd", "scr", "pif", "com", "vbs", "jar", "js", "wsf", "wsh"})
_RESERVED_CHARS = re.compile(r'[<>:"|?*]')
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class Verdict(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    TOO_LARGE = "too_large"
    BATCH_TOO_LARGE = "batch_too_large"
    TOO_MANY_FILES = "too_many_files"
    DOWNLOAD_FAILED = "download_failed"
    TIMEOUT = "timeout"
    EMPTY_FILE = "empty_file"
    BAD_SIGNATURE = "bad_signature"
    MIME_MISMATCH = "mime_mismatch"
    UNSUPPORTED_TYPE = "unsupported_type"
    DANGEROUS_FILENAME = "dangerous_filename"


class AttachmentDescriptor(BaseModel):
    source_url: str
    declared_mime: Optional[str] = None
    declared_size: Optional[int] = Field(default=None, ge=0)
    filename: Optional[str] = None


@dataclass
class AttachmentJob:
    descriptor: AttachmentDescriptor
    buffer: Optional[bytearray] = None
    sniffed_mime: Optional[str] = None
    sanitized_filename: Optional[str] = None
    verdict: Verdict = Verdict.PENDING
    reason: Optional[RejectionReason] = None
    detail: Optional[str] = None
    size: int = 0


@dataclass
class BatchResult:
    accepted: list[AttachmentJob] = field(default_factory=list)
    rejected: list[AttachmentJob] = field(default_factory=list)
    uploaded: bool = False
    message_id: Optional[str] = None

    @property
    def partial(self) -> bool:
        return bool(self.accepted) and bool(self.rejected)

    def summary(self) -> dict:
        return {
            "accepted": [j.sanitized_filename for j in self.accepted],
            "rejected": [
                {"file": j.descriptor.filename or j.descriptor.source_url, "reason": j.reason.value if j.reason else None,
                 "detail": j.detail}
                for j in self.rejected
            ],
            "uploaded": self.uploaded,
        }


@dataclass
class AttachmentLimits:
    max_file_bytes: int = 10 * 1024 * 1024
    max_files: int = 10
    max_batch_bytes: int = 50 * 1024 * 1024
    download_timeout_s: float = 15.0
    upload_timeout_s: float = 30.0
    concurrency: int = 3
    upload_attempts: int = 3
    memory_threshold_bytes: int = 100 * 1024 * 1024

    @classmethod
    def from_settings(cls, settings) -> "AttachmentLimits":
        return cls(
            max_file_bytes=settings.attachment_max_file_bytes,
            max_files=settings.attachment_max_files,
            max_batch_bytes=settings.attachment_max_batch_bytes,
            download_timeout_s=settings.attachment_download_timeout_s,
            upload_timeout_s=settings.attachment_upload_timeout_s,
            concurrency=settings.attachment_concurrency,
            upload_attempts=settings.attachment_upload_attempts,
            memory_threshold_bytes=settings.memory_threshold_bytes,
        )


class AttachmentRejected(Exception):
    def __init__(self, reason: RejectionReason, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


# -------------------------
# Content checks
# -------------------------

def sniff_mime(data: bytes) -> Optional[str]:
    """Identify a supported image type from its leading bytes.

    >>> sniff_mime(b"\\x89PNG\\r\\n\\x1a\\n....")
    'image/png'
    >>> sniff_mime(b"%PDF-1.7") is None
    True
    """
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def normalize_content_type(value: Optional[str]) -> Optional[str]:
    """Lower-case, drop parameters and resolve aliases (``image/jpg``)."""
    if not value:
        return None
    mime = value.split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(mime, mime) or None


def is_dangerous_filename(name: Optional[str]) -> bool:
    if not name:
        return False
    _, dot, ext = name.strip().rpartition(".")
    return bool(dot) and ext.lower() in DANGEROUS_EXTENSIONS


def sanitize_filename(name: Optional[str], sniffed_mime: Optional[str] = None, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Return a filename safe to hand to the chat platform.

    Drops directory components, traversal sequences, control and reserved
    characters, neutralizes a leading dot, appends the extension of the
    sniffed type when the name has none and caps the length while keeping
    the extension.

    >>> sanitize_filename("../../etc/pass:wd.png")
    'pass_wd.png'
    >>> sanitize_filename("", "image/gif")
    'attachment.gif'
    """
    cleaned = (name or "").replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _CONTROL_CHARS.sub("", cleaned)
    cleaned = cleaned.replace("..", "_")
    cleaned = _RESERVED_CHARS.sub("_", cleaned).strip()
    if cleaned.startswith("."):
        cleaned = "_" + cleaned[1:]
    if not cleaned.strip("_ "):
        cleaned = "attachment"
    if sniffed_mime in _EXTENSIONS and "." not in cleaned:
        cleaned += _EXTENSIONS[sniffed_mime]
    if len(cleaned) > max_length:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and 0 < len(ext) < 16:
            cleaned = stem[: max_length - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:max_length]
    return cleaned


# -------------------------
# Buffers and sources
# -------------------------

class BufferPool:
    """Keeps up to ``size`` released ``bytearray`` buffers for reuse."""

    def __init__(self, size: int = 5):
        self.size = size
        self._free: list[bytearray] = []
        self.reused = 0

    def acquire(self) -> bytearray:
        if self._free:
            self.reused += 1
            return self._free.pop()
        return bytearray()

    def release(self, buffer: bytearray) -> None:
        buffer.clear()
        if len(self._free) < self.size:
            self._free.append(buffer)

    def drain(self) -> None:
        self._free.clear()

    def __len__(self) -> int:
        return len(self._free)


class HttpxFileSource:
    """Streams remote files with httpx."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, chunk_size: int = 64 * 1024):
        self._client = client or httpx.AsyncClient(follow_redirects=True)
        self._chunk_size = chunk_size

    async def stream(self, url: str) -> AsyncIterator[bytes]:
        async with self._client.stream("GET", url) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes(self._chunk_size):
                yield chunk

    async def aclose(self) -> None:
        await self._client.aclose()


# -------------------------
# Pipeline
# -------------------------

class AttachmentPipeline:
    """Validate a batch of remote files and upload the survivors in one message."""

    def __init__(
        self,
        chat: ChatPlatform,
        source: RemoteFileSource,
        scheduler: Scheduler,
        *,
        limits: Optional[AttachmentLimits] = None,
        pool: Optional[BufferPool] = None,
        retry_policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ):
        self._chat = chat
        self._source = source
        self._scheduler = scheduler
        self.limits = limits or AttachmentLimits()
        self.pool = pool or BufferPool()
        self._retry_policy = retry_policy or RetryPolicy()
        self._rng = rng

    async def process_batch(
        self,
        thread: ThreadHandle,
        descriptors: Sequence[AttachmentDescriptor],
        *,
        content: Optional[str] = None,
    ) -> BatchResult:
        jobs = [AttachmentJob(descriptor=d) for d in descriptors]
        active = jobs[: self.limits.max_files]
        for job in jobs[self.limits.max_files:]:
            self._reject(job, RejectionReason.TOO_MANY_FILES, f"batch limit is {self.limits.max_files} files")

        sem = asyncio.Semaphore(max(self.limits.concurrency, 1))
        await asyncio.gather(*(self._prepare(job, sem) for job in active))

        # Batch budget is applied in input order once all downloads settle
        total = 0
        for job in active:
            if job.verdict is not Verdict.ACCEPTED:
                continue
            if total + job.size > self.limits.max_batch_bytes:
                self._reject(job, RejectionReason.BATCH_TOO_LARGE,
                             f"batch would exceed {self.limits.max_batch_bytes} bytes")
                continue
            total += job.size

        result = BatchResult(
            accepted=[j for j in jobs if j.verdict is Verdict.ACCEPTED],
            rejected=[j for j in jobs if j.verdict is Verdict.REJECTED],
        )
        for job in result.accepted:
            ATTACHMENTS_TOTAL.labels(verdict="accepted", reason="").inc()
            ATTACHMENT_BYTES.observe(job.size)

        try:
            if result.accepted:
                result.message_id = await self._upload(thread, result.accepted, content)
                result.uploaded = True
                ATTACHMENT_UPLOAD_TOTAL.labels(result="uploaded").inc()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            ATTACHMENT_UPLOAD_TOTAL.labels(result="failed").inc()
            if classify_failure(exc) == "permanent":
                raise
            raise AttachmentUploadError(
                f"Uploading {len(result.accepted)} attachments to thread {thread.id} failed: {exc}",
                result=result,
            ) from exc
        finally:
            for job in jobs:
                self._release(job)
            self._relieve_memory(total)

        logger.info("Attachment batch for thread %s: %d accepted, %d rejected, uploaded=%s",
                    thread.id, len(result.accepted), len(result.rejected), result.uploaded)
        return result

    async def _prepare(self, job: AttachmentJob, sem: asyncio.Semaphore) -> None:
        async with sem:
            try:
                self._precheck(job.descriptor)
                job.buffer = self.pool.acquire()
                await asyncio.wait_for(self._download(job), timeout=self.limits.download_timeout_s)
                self._verify(job)
                job.verdict = Verdict.ACCEPTED
            except AttachmentRejected as rejected:
                self._reject(job, rejected.reason, rejected.detail)
            except asyncio.TimeoutError:
                self._reject(job, RejectionReason.TIMEOUT,
                             f"download exceeded {self.limits.download_timeout_s}s")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._reject(job, RejectionReason.DOWNLOAD_FAILED, f"{exc.__class__.__name__}: {exc}")

    def _precheck(self, descriptor: AttachmentDescriptor) -> None:
        if descriptor.declared_size is not None and descriptor.declared_size > self.limits.max_file_bytes:
            raise AttachmentRejected(RejectionReason.TOO_LARGE,
                                     f"declared size {descriptor.declared_size} exceeds {self.limits.max_file_bytes} bytes")
        if is_dangerous_filename(descriptor.filename):
            raise AttachmentRejected(RejectionReason.DANGEROUS_FILENAME, f"refusing executable file {descriptor.filename!r}")
        declared = normalize_content_type(descriptor.declared_mime)
        if declared and declared != OCTET_STREAM and declared not in SUPPORTED_MIME_TYPES:
            raise AttachmentRejected(RejectionReason.UNSUPPORTED_TYPE, f"unsupported content type {declared}")

    async def _download(self, job: AttachmentJob) -> None:
        assert job.buffer is not None
        ceiling = self.limits.max_file_bytes
        async with aclosing(self._source.stream(job.descriptor.source_url)) as chunks:
            async for chunk in chunks:
                if len(job.buffer) + len(chunk) > ceiling:
                    raise AttachmentRejected(RejectionReason.TOO_LARGE, f"body exceeds {ceiling} bytes")
                job.buffer.extend(chunk)
        job.size = len(job.buffer)

    def _verify(self, job: AttachmentJob) -> None:
        assert job.buffer is not None
        if not job.buffer:
            raise AttachmentRejected(RejectionReason.EMPTY_FILE, "downloaded file is empty")
        sniffed = sniff_mime(bytes(job.buffer[:16]))
        if sniffed is None:
            raise AttachmentRejected(RejectionReason.BAD_SIGNATURE, "content matches no supported image signature")
        declared = normalize_content_type(job.descriptor.declared_mime)
        if declared and declared != OCTET_STREAM and declared != sniffed:
            raise AttachmentRejected(RejectionReason.MIME_MISMATCH, f"declared {declared} but content is {sniffed}")
        job.sniffed_mime = sniffed
        job.sanitized_filename = sanitize_filename(job.descriptor.filename, sniffed)

    async def _upload(self, thread: ThreadHandle, jobs: list[AttachmentJob], content: Optional[str]) -> str:
        message = OutboundMessage(
            content=content,
            files=[
                OutboundFile(filename=j.sanitized_filename or "attachment", content_type=j.sniffed_mime or OCTET_STREAM,
                             data=bytes(j.buffer or b""))
                for j in jobs
            ],
        )

        async def attempt() -> str:
            return await asyncio.wait_for(self._chat.send_to_thread(thread, message),
                                          timeout=self.limits.upload_timeout_s)

        return await with_retry(
            attempt,
            attempts=self.limits.upload_attempts,
            policy=self._retry_policy,
            scheduler=self._scheduler,
            description=f"attachment upload to thread {thread.id}",
            rng=self._rng,
        )

    def _reject(self, job: AttachmentJob, reason: RejectionReason, detail: str) -> None:
        job.verdict = Verdict.REJECTED
        job.reason = reason
        job.detail = detail
        ATTACHMENTS_TOTAL.labels(verdict="rejected", reason=reason.value).inc()
        logger.info("Rejected attachment %s: %s (%s)",
                    job.descriptor.filename or job.descriptor.source_url, reason.value, detail)

    def _release(self, job: AttachmentJob) -> None:
        if job.buffer is not None:
            self.pool.release(job.buffer)
            job.buffer = None

    def _relieve_memory(self, batch_bytes: int) -> None:
        if batch_bytes > self.limits.memory_threshold_bytes // 2:
            self.pool.drain()
            gc.collect()
            logger.info("Released attachment buffers after a %d byte batch", batch_bytes)
