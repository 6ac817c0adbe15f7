"""Unit tests for PageRasterizer."""
import sys
from pathlib import Path

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

import asyncio
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures.process import BrokenProcessPool

import fitz
import httpx
import pytest
from unittest.mock import AsyncMock, Mock, patch
from models.document import DecodeProgress
from services import decode_engine
from services.decode_engine import (
    INLINE,
    PROCESS,
    THREAD,
    DecodeEngineClient,
    LoadedDocument,
    RenderedPage,
    WorkerSourceConfig,
)
from services.errors import (
    DocumentTimeoutError,
    InvalidDocumentError,
    NetworkError,
    NotFoundError,
    RuntimeLoadError,
)
from services.lifecycle import CancellationToken
from services.rasterizer import PageRasterizer, classify_open_failure, render_placeholder

DOCUMENT_URL = "https://cdn.example/trip.pdf"


def make_pdf(page_count: int) -> bytes:
    """Build an in-memory PDF with one line of text per page."""
    document = fitz.open()
    for number in range(1, page_count + 1):
        page = document.new_page()
        page.insert_text((72, 72), f"Page {number}")
    data = document.tobytes()
    document.close()
    return data


class DyingWorkerPool(ThreadPoolExecutor):
    """Thread pool that breaks the way a process pool does when its worker exits mid-page."""

    def __init__(self, crash_page=None):
        super().__init__(max_workers=1)
        self.crash_page = crash_page
        self.broken = False

    def submit(self, fn, *args, **kwargs):
        if self.broken:
            raise BrokenProcessPool("A child process terminated abruptly")
        if fn is decode_engine.render_page_worker and args[1] == self.crash_page:
            self.broken = True
            # The dead process took its open documents with it
            decode_engine._loaded_documents.clear()
            future = Future()
            future.set_exception(BrokenProcessPool("A child process terminated abruptly"))
            return future
        return super().submit(fn, *args, **kwargs)


def serve(content: bytes = b"%PDF-1.7 test", status_code: int = 200) -> httpx.MockTransport:
    return httpx.MockTransport(lambda request: httpx.Response(status_code, content=content))


def fake_engine(page_count: int, failing_pages=()) -> Mock:
    """Decode engine double whose pages render to b"page-N" unless listed as failing."""
    async def render_page(document_id, page_number, scale, image_format):
        if page_number in failing_pages:
            raise RuntimeError(f"page {page_number} is corrupt")
        return RenderedPage(data=f"page-{page_number}".encode(), width=100, height=140)

    engine = Mock(spec=DecodeEngineClient)
    engine.open_document = AsyncMock(return_value=LoadedDocument("doc-1", page_count))
    engine.render_page = AsyncMock(side_effect=render_page)
    engine.advance_source.return_value = True
    return engine


class TestPageRasterizer:
    """Test suite for PageRasterizer."""

    def test_invalid_format(self):
        """Test unsupported output formats are rejected."""
        with pytest.raises(ValueError, match="Unsupported page image format"):
            PageRasterizer(fake_engine(1), image_format="gif")

    @pytest.mark.parametrize("page_count", [0, 1, 7])
    def test_one_image_per_page(self, page_count):
        """Test the output always has exactly one image per page."""
        rasterizer = PageRasterizer(fake_engine(page_count), transport=serve())

        pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert len(pages) == page_count
        assert [page.page_number for page in pages] == list(range(1, page_count + 1))

    def test_empty_document_reports_complete_progress(self):
        """Test a document without pages reports 0/0 once and returns nothing."""
        progress = []
        rasterizer = PageRasterizer(fake_engine(0), transport=serve())

        pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL, on_progress=progress.append))

        assert pages == []
        assert progress == [DecodeProgress(0, 0)]
        assert progress[0].fraction == 1.0

    def test_progress_is_monotonic_and_complete(self):
        """Test progress fires once per page in order and ends at N/N."""
        progress = []
        rasterizer = PageRasterizer(fake_engine(4), transport=serve())

        asyncio.run(rasterizer.rasterize(DOCUMENT_URL, on_progress=progress.append))

        assert [(p.completed_pages, p.total_pages) for p in progress] == [(1, 4), (2, 4), (3, 4), (4, 4)]

    def test_failed_page_becomes_placeholder(self):
        """A 5-page document whose page 3 fails still yields 5 pages."""
        progress = []
        engine = fake_engine(5, failing_pages={3})
        rasterizer = PageRasterizer(engine, scale=1.0, transport=serve())

        pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL, on_progress=progress.append))

        assert len(pages) == 5
        assert [page.placeholder for page in pages] == [False, False, True, False, False]
        assert pages[2].page_number == 3
        assert pages[2].mime_type == "image/png"
        assert pages[2].data.startswith(b"\x89PNG")
        assert pages[3].data == b"page-4"
        assert progress[-1] == DecodeProgress(5, 5)

    def test_pages_rendered_in_order_one_at_a_time(self):
        """Test pages are requested strictly in document order."""
        engine = fake_engine(3)
        rasterizer = PageRasterizer(engine, scale=1.5, transport=serve())

        asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        requested = [call.args[1] for call in engine.render_page.call_args_list]
        assert requested == [1, 2, 3]
        assert all(call.args[2] == 1.5 for call in engine.render_page.call_args_list)

    def test_cancellation_stops_before_next_page(self):
        """Test a cancelled token stops the loop and returns what was rendered."""
        token = CancellationToken()
        engine = fake_engine(5)

        def on_progress(progress):
            if progress.completed_pages == 2:
                token.cancel()

        rasterizer = PageRasterizer(engine, transport=serve())
        pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL, on_progress=on_progress, cancel_token=token))

        assert len(pages) == 2
        assert engine.render_page.call_count == 2

    def test_runtime_load_failures_exhaust_fallbacks(self):
        """Three worker failures with two fallbacks surface as RuntimeLoadError."""
        engine = DecodeEngineClient(WorkerSourceConfig([PROCESS, THREAD]))
        engine.open_document = AsyncMock(side_effect=RuntimeLoadError("decode worker failed to start"))
        rasterizer = PageRasterizer(engine, max_retries=2, transport=serve())

        with pytest.raises(RuntimeLoadError):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert engine.open_document.call_count == 3
        assert engine.active_source == INLINE

    def test_runtime_load_retries_stop_at_ceiling(self):
        """Test the retry ceiling applies even if sources remain."""
        engine = DecodeEngineClient(WorkerSourceConfig([PROCESS, THREAD]))
        engine.open_document = AsyncMock(side_effect=RuntimeLoadError("decode worker failed to start"))
        rasterizer = PageRasterizer(engine, max_retries=1, transport=serve())

        with pytest.raises(RuntimeLoadError):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert engine.open_document.call_count == 2
        assert engine.active_source == THREAD

    def test_runtime_load_recovers_on_fallback(self):
        """Test a failing worker source is replaced and the document opens."""
        engine = DecodeEngineClient(WorkerSourceConfig([PROCESS]))
        engine.open_document = AsyncMock(side_effect=[BrokenProcessPool("pool died"), LoadedDocument("doc-1", 2)])
        engine.render_page = AsyncMock(return_value=RenderedPage(b"img", 10, 10))
        rasterizer = PageRasterizer(engine, transport=serve())

        pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert len(pages) == 2
        assert engine.active_source == INLINE

    def test_open_timeout(self):
        """Test a hung open is abandoned as a timeout and not retried."""
        async def hang(data):
            await asyncio.sleep(5)

        engine = fake_engine(1)
        engine.open_document = AsyncMock(side_effect=hang)
        rasterizer = PageRasterizer(engine, open_timeout=0.05, transport=serve())

        with pytest.raises(DocumentTimeoutError):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert engine.open_document.call_count == 1
        engine.advance_source.assert_not_called()
        engine.discard_executor.assert_called_once_with()

    def test_missing_document(self):
        """Test a 404 from storage raises NotFoundError."""
        rasterizer = PageRasterizer(fake_engine(1), transport=serve(status_code=404))

        with pytest.raises(NotFoundError) as exc_info:
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert exc_info.value.error.details["status_code"] == 404

    def test_server_error(self):
        """Test a 5xx from storage raises NetworkError."""
        rasterizer = PageRasterizer(fake_engine(1), transport=serve(status_code=503))

        with pytest.raises(NetworkError, match="status 503"):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

    def test_connection_error(self):
        """Test connection failures raise NetworkError without retrying."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        engine = fake_engine(1)
        rasterizer = PageRasterizer(engine, transport=httpx.MockTransport(handler))

        with pytest.raises(NetworkError):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        engine.advance_source.assert_not_called()

    def test_empty_body(self):
        """Test an empty response body is an invalid document."""
        rasterizer = PageRasterizer(fake_engine(1), transport=serve(content=b""))

        with pytest.raises(InvalidDocumentError, match="empty"):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

    def test_invalid_document_with_real_engine(self):
        """Test bytes that are not a PDF raise InvalidDocumentError."""
        engine = DecodeEngineClient(WorkerSourceConfig([INLINE]))
        rasterizer = PageRasterizer(engine, transport=serve(content=b"<html>not a pdf</html>"))

        with pytest.raises(InvalidDocumentError):
            asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

    def test_real_document_inline(self):
        """Test a real PDF renders to PNG pages on the calling thread."""
        engine = DecodeEngineClient(WorkerSourceConfig([INLINE]))
        rasterizer = PageRasterizer(engine, scale=1.0, transport=serve(content=make_pdf(3)))

        pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert len(pages) == 3
        assert all(page.data.startswith(b"\x89PNG") for page in pages)
        assert all(not page.placeholder for page in pages)
        assert pages[0].width == 595
        assert pages[0].data_uri.startswith("data:image/png;base64,")

    def test_document_released_after_rasterizing(self):
        """Test the worker copy of the document is freed once pages are done."""
        engine = fake_engine(2)
        rasterizer = PageRasterizer(engine, transport=serve())

        asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        engine.release_document.assert_called_once_with("doc-1")

    def test_real_document_loaded_once(self):
        """Test the PDF bytes go to the worker once, not once per page."""
        engine = DecodeEngineClient(WorkerSourceConfig([INLINE]))
        rasterizer = PageRasterizer(engine, scale=0.5, transport=serve(content=make_pdf(4)))

        with patch("services.decode_engine.load_document_worker", wraps=decode_engine.load_document_worker) as load:
            pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL))

        assert len(pages) == 4
        assert load.call_count == 1
        assert engine._documents == {}
        assert decode_engine._loaded_documents.get(load.call_args.args[0]) is None

    def test_hung_open_does_not_block_next_document(self):
        """After an open times out, the next document gets a fresh worker."""
        released = threading.Event()
        calls = []
        real_load = decode_engine.load_document_worker

        def load_hanging_once(document_id, data):
            calls.append(document_id)
            if len(calls) == 1:
                released.wait(timeout=5)
            return real_load(document_id, data)

        engine = DecodeEngineClient(WorkerSourceConfig([THREAD]))

        async def scenario():
            stuck = PageRasterizer(engine, open_timeout=0.5, transport=serve(content=make_pdf(1)))
            with pytest.raises(DocumentTimeoutError):
                await stuck.rasterize(DOCUMENT_URL)

            healthy = PageRasterizer(engine, scale=0.5, open_timeout=5, transport=serve(content=make_pdf(2)))
            return await healthy.rasterize("https://cdn.example/other.pdf")

        try:
            with patch("services.decode_engine.load_document_worker", side_effect=load_hanging_once):
                pages = asyncio.run(scenario())
        finally:
            released.set()
            engine.close()

        assert len(pages) == 2
        assert not any(page.placeholder for page in pages)
        assert len(calls) == 2
        assert engine.active_source == THREAD

    def test_dead_worker_only_loses_its_page(self):
        """A worker process dying on page 2 leaves pages 3-5 intact."""
        pools = []

        def start_pool(max_workers):
            pool = DyingWorkerPool(crash_page=None if pools else 2)
            pools.append(pool)
            return pool

        engine = DecodeEngineClient(WorkerSourceConfig([PROCESS]))
        rasterizer = PageRasterizer(engine, scale=0.5, transport=serve(content=make_pdf(5)))

        try:
            with patch("services.decode_engine.ProcessPoolExecutor", side_effect=start_pool):
                pages = asyncio.run(rasterizer.rasterize(DOCUMENT_URL))
        finally:
            engine.close()

        assert len(pages) == 5
        assert [page.page_number for page in pages if page.placeholder] == [2]
        assert len(pools) == 2
        assert engine.active_source == PROCESS


class TestClassifyOpenFailure:
    """Test suite for open failure classification."""

    def test_timeouts(self):
        assert isinstance(classify_open_failure(asyncio.TimeoutError(), DOCUMENT_URL), DocumentTimeoutError)
        assert isinstance(classify_open_failure(httpx.ReadTimeout("slow"), DOCUMENT_URL), DocumentTimeoutError)

    def test_http_status(self):
        request = httpx.Request("GET", DOCUMENT_URL)
        gone = httpx.HTTPStatusError("gone", request=request, response=httpx.Response(410, request=request))
        forbidden = httpx.HTTPStatusError("no", request=request, response=httpx.Response(403, request=request))

        assert isinstance(classify_open_failure(gone, DOCUMENT_URL), NotFoundError)
        assert isinstance(classify_open_failure(forbidden, DOCUMENT_URL), NetworkError)

    def test_worker_failures(self):
        assert isinstance(classify_open_failure(BrokenProcessPool("died"), DOCUMENT_URL), RuntimeLoadError)
        assert isinstance(
            classify_open_failure(RuntimeError("Setting up fake worker failed"), DOCUMENT_URL),
            RuntimeLoadError
        )

    def test_document_failures(self):
        assert isinstance(classify_open_failure(fitz.FileDataError("broken"), DOCUMENT_URL), InvalidDocumentError)
        assert isinstance(
            classify_open_failure(ValueError("cannot open encrypted document"), DOCUMENT_URL),
            InvalidDocumentError
        )

    def test_viewer_errors_pass_through(self):
        error = NotFoundError("gone")
        assert classify_open_failure(error, DOCUMENT_URL) is error

    def test_details(self):
        error = classify_open_failure(ValueError("bad xref"), DOCUMENT_URL)

        assert error.error.details["url"] == DOCUMENT_URL
        assert error.error.details["error_type"] == "ValueError"
        assert error.error.details["original_error"] == "bad xref"


class TestRenderPlaceholder:
    """Test suite for the placeholder page."""

    def test_placeholder_image(self):
        """Test the placeholder is a flagged, fixed-size image."""
        page = render_placeholder(3, 1.0)

        assert page.placeholder is True
        assert page.page_number == 3
        assert (page.width, page.height) == (612, 792)
        assert page.data.startswith(b"\x89PNG")

    def test_placeholder_scale_and_format(self):
        page = render_placeholder(1, 0.5, "jpeg")

        assert (page.width, page.height) == (306, 396)
        assert page.mime_type == "image/jpeg"
        assert page.data.startswith(b"\xff\xd8")
