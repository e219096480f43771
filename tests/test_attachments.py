import asyncio

import pytest

from bridge_fakes import GIF, JPEG, PNG, WEBP, FakeChat, FakeFileSource
from ticketbridge.attachments import (
    AttachmentDescriptor,
    AttachmentLimits,
    AttachmentPipeline,
    BufferPool,
    RejectionReason,
    is_dangerous_filename,
    normalize_content_type,
    sanitize_filename,
    sniff_mime,
)
from ticketbridge.errors import AttachmentUploadError, ChatPermissionError, ChatPlatformError
from ticketbridge.ports import ThreadHandle
from ticketbridge.retry import RetryPolicy
from ticketbridge.scheduler import VirtualScheduler


THREAD = ThreadHandle(id="900")


def _pipeline(bodies, chat=None, sched=None, pool=None, **limits):
    chat = chat or FakeChat([THREAD])
    source = FakeFileSource(bodies)
    pipeline = AttachmentPipeline(
        chat,
        source,
        sched or VirtualScheduler(),
        limits=AttachmentLimits(**limits),
        pool=pool,
        retry_policy=RetryPolicy(base_delay_ms=100),
    )
    return pipeline, chat, source


def _reasons(result):
    return {job.descriptor.source_url: job.reason for job in result.rejected}


def test_sniff_mime_signatures():
    assert sniff_mime(JPEG) == "image/jpeg"
    assert sniff_mime(PNG) == "image/png"
    assert sniff_mime(GIF) == "image/gif"
    assert sniff_mime(WEBP) == "image/webp"
    assert sniff_mime(b"%PDF-1.7 hello") is None
    assert sniff_mime(b"") is None


def test_normalize_content_type():
    assert normalize_content_type("IMAGE/JPG; charset=binary") == "image/jpeg"
    assert normalize_content_type("image/png") == "image/png"
    assert normalize_content_type("") is None


def test_dangerous_filenames():
    assert is_dangerous_filename("setup.EXE") is True
    assert is_dangerous_filename("payload.js") is True
    assert is_dangerous_filename("photo.png") is False
    assert is_dangerous_filename("exe") is False
    assert is_dangerous_filename(None) is False


def test_sanitize_filename():
    assert sanitize_filename("../../etc/pass:wd.png") == "pass_wd.png"
    assert sanitize_filename("..\\..\\secret", "image/png") == "secret.png"
    assert sanitize_filename("", "image/gif") == "attachment.gif"
    assert sanitize_filename(None) == "attachment"
    assert sanitize_filename(".hidden.png") == "_hidden.png"
    assert sanitize_filename("bad\x00name?.jpg") == "badname_.jpg"
    assert sanitize_filename("a..b.png") == "a_b.png"
    long_name = sanitize_filename("a" * 300 + ".png")
    assert len(long_name) == 255 and long_name.endswith(".png")


def test_buffer_pool_reuses_and_caps():
    pool = BufferPool(size=1)
    first = pool.acquire()
    first.extend(b"data")
    pool.release(first)
    pool.release(bytearray(b"other"))
    assert len(pool) == 1
    again = pool.acquire()
    assert again is first and len(again) == 0
    assert pool.reused == 1


@pytest.mark.asyncio
async def test_mime_mismatch_is_rejected_and_batch_continues():
    pipeline, chat, _ = _pipeline({"u/a": JPEG, "u/b": PNG})
    result = await pipeline.process_batch(THREAD, [
        AttachmentDescriptor(source_url="u/a", declared_mime="image/png", filename="a.png"),
        AttachmentDescriptor(source_url="u/b", declared_mime="image/png", filename="b.png"),
    ], content="see attached")

    assert _reasons(result) == {"u/a": RejectionReason.MIME_MISMATCH}
    assert result.partial is True
    assert result.uploaded is True
    [(thread_id, message)] = chat.sent
    assert thread_id == "900"
    assert message.content == "see attached"
    assert [(f.filename, f.content_type) for f in message.files] == [("b.png", "image/png")]
    assert message.files[0].data == PNG


@pytest.mark.asyncio
async def test_unrecognized_signature_is_rejected():
    pipeline, chat, _ = _pipeline({"u/pdf": b"%PDF-1.7 not an image"})
    result = await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/pdf")])
    assert _reasons(result) == {"u/pdf": RejectionReason.BAD_SIGNATURE}
    assert result.uploaded is False
    assert chat.sent == []


@pytest.mark.asyncio
async def test_octet_stream_uses_sniffed_type_and_extension():
    pipeline, chat, _ = _pipeline({"u/x": GIF})
    result = await pipeline.process_batch(THREAD, [
        AttachmentDescriptor(source_url="u/x", declared_mime="application/octet-stream"),
    ])
    assert result.summary()["accepted"] == ["attachment.gif"]
    assert chat.sent[0][1].files[0].content_type == "image/gif"


@pytest.mark.asyncio
async def test_declared_oversize_is_rejected_without_download():
    pipeline, chat, source = _pipeline({"u/big": PNG, "u/ok": PNG}, max_file_bytes=100)
    result = await pipeline.process_batch(THREAD, [
        AttachmentDescriptor(source_url="u/big", declared_size=101),
        AttachmentDescriptor(source_url="u/ok", declared_size=32),
    ])
    assert _reasons(result) == {"u/big": RejectionReason.TOO_LARGE}
    assert source.requested == ["u/ok"]
    assert len(chat.sent[0][1].files) == 1


@pytest.mark.asyncio
async def test_understated_size_is_caught_while_streaming():
    pipeline, chat, _ = _pipeline({"u/liar": PNG + b"\x00" * 200}, max_file_bytes=100)
    result = await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/liar", declared_size=10)])
    assert _reasons(result) == {"u/liar": RejectionReason.TOO_LARGE}
    assert chat.sent == []


@pytest.mark.asyncio
async def test_batch_byte_budget_applies_in_input_order():
    pipeline, chat, _ = _pipeline({"u/1": PNG, "u/2": PNG, "u/3": PNG}, max_batch_bytes=70)
    result = await pipeline.process_batch(THREAD, [
        AttachmentDescriptor(source_url=f"u/{i}", filename=f"{i}.png") for i in (1, 2, 3)
    ])
    assert _reasons(result) == {"u/3": RejectionReason.BATCH_TOO_LARGE}
    assert [f.filename for f in chat.sent[0][1].files] == ["1.png", "2.png"]


@pytest.mark.asyncio
async def test_files_beyond_limit_are_rejected():
    pipeline, chat, source = _pipeline({"u/1": PNG, "u/2": PNG, "u/3": PNG}, max_files=2)
    result = await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url=f"u/{i}") for i in (1, 2, 3)])
    assert _reasons(result) == {"u/3": RejectionReason.TOO_MANY_FILES}
    assert "u/3" not in source.requested
    assert len(result.accepted) == 2


@pytest.mark.asyncio
async def test_precheck_rejections():
    pipeline, chat, source = _pipeline({"u/exe": PNG, "u/pdf": PNG})
    result = await pipeline.process_batch(THREAD, [
        AttachmentDescriptor(source_url="u/exe", filename="evil.exe"),
        AttachmentDescriptor(source_url="u/pdf", declared_mime="application/pdf"),
    ])
    assert _reasons(result) == {
        "u/exe": RejectionReason.DANGEROUS_FILENAME,
        "u/pdf": RejectionReason.UNSUPPORTED_TYPE,
    }
    assert source.requested == []


@pytest.mark.asyncio
async def test_download_problems_are_rejections():
    pipeline, chat, _ = _pipeline(
        {"u/empty": b"", "u/err": ConnectionError("reset"), "u/hang": None, "u/ok": WEBP},
        download_timeout_s=0.05,
    )
    result = await pipeline.process_batch(THREAD, [
        AttachmentDescriptor(source_url=url) for url in ("u/empty", "u/err", "u/hang", "u/ok")
    ])
    assert _reasons(result) == {
        "u/empty": RejectionReason.EMPTY_FILE,
        "u/err": RejectionReason.DOWNLOAD_FAILED,
        "u/hang": RejectionReason.TIMEOUT,
    }
    assert [job.sanitized_filename for job in result.accepted] == ["attachment.webp"]


@pytest.mark.asyncio
async def test_downloads_respect_concurrency_limit():
    class CountingSource:
        def __init__(self):
            self.active = 0
            self.peak = 0

        async def stream(self, url):
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                await asyncio.sleep(0.01)
                yield PNG
            finally:
                self.active -= 1

    source = CountingSource()
    pipeline = AttachmentPipeline(FakeChat([THREAD]), source, VirtualScheduler(),
                                  limits=AttachmentLimits(concurrency=2))
    result = await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url=f"u/{i}") for i in range(5)])
    assert len(result.accepted) == 5
    assert source.peak == 2


@pytest.mark.asyncio
async def test_upload_is_retried_as_a_whole():
    sched = VirtualScheduler()
    chat = FakeChat([THREAD])
    chat.send_errors = [ChatPlatformError("502", status_code=502)]
    pipeline, _, _ = _pipeline({"u/1": PNG, "u/2": JPEG}, chat=chat, sched=sched, upload_attempts=3)

    result = await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/1"),
                                                   AttachmentDescriptor(source_url="u/2")])
    assert result.uploaded is True
    assert result.message_id == "m1"
    assert len(chat.sent) == 1
    assert len(chat.sent[0][1].files) == 2
    assert len(sched.sleeps) == 1


@pytest.mark.asyncio
async def test_upload_failure_after_all_attempts_raises_with_result():
    chat = FakeChat([THREAD])
    chat.send_errors = [ChatPlatformError("503", status_code=503) for _ in range(3)]
    pipeline, _, _ = _pipeline({"u/1": PNG}, chat=chat, upload_attempts=3)

    with pytest.raises(AttachmentUploadError) as info:
        await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/1")])
    assert info.value.result.uploaded is False
    assert len(info.value.result.accepted) == 1
    assert chat.sent == []


@pytest.mark.asyncio
async def test_permanent_upload_failure_is_not_retried():
    sched = VirtualScheduler()
    chat = FakeChat([THREAD])
    chat.send_errors = [ChatPermissionError("403", status_code=403)]
    pipeline, _, _ = _pipeline({"u/1": PNG}, chat=chat, sched=sched)

    with pytest.raises(ChatPermissionError):
        await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/1")])
    assert sched.sleeps == []


@pytest.mark.asyncio
async def test_buffers_are_reused_across_batches():
    pool = BufferPool(size=5)
    pipeline, _, _ = _pipeline({"u/1": PNG, "u/2": GIF}, pool=pool)
    await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/1")])
    assert len(pool) == 1
    await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/2")])
    assert pool.reused == 1


@pytest.mark.asyncio
async def test_large_batch_releases_pooled_buffers():
    pool = BufferPool(size=5)
    pipeline, _, _ = _pipeline({"u/1": PNG, "u/2": PNG}, pool=pool, memory_threshold_bytes=40)
    await pipeline.process_batch(THREAD, [AttachmentDescriptor(source_url="u/1"),
                                          AttachmentDescriptor(source_url="u/2")])
    assert len(pool) == 0
