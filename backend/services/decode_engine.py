"""PyMuPDF decode engine client with an ordered list of worker sources."""
import asyncio
import logging
import uuid
from concurrent.futures import BrokenExecutor, Executor, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import fitz  # PyMuPDF

from services.errors import RuntimeLoadError
from config import DECODE_WORKER_SOURCES

logger = logging.getLogger(__name__)

PROCESS = "process"
THREAD = "thread"
INLINE = "inline"  # no background worker, decode on the calling thread
KNOWN_SOURCES = (PROCESS, THREAD, INLINE)

# Output names understood by Pixmap.tobytes()
PIXMAP_OUTPUTS = {"png": "png", "jpeg": "jpg"}

# Documents opened by this worker, keyed by document id
_loaded_documents: Dict[str, fitz.Document] = {}


@dataclass
class RenderedPage:
    """Encoded raster of one page as produced by a worker."""
    data: bytes
    width: int
    height: int


@dataclass
class LoadedDocument:
    """A document held open by the decode worker."""
    document_id: str
    page_count: int


class DocumentNotLoaded(LookupError):
    """The worker has no open document under the requested id."""


def load_document_worker(document_id: str, data: bytes) -> int:
    """Open a PDF from memory, keep it under ``document_id`` and return its page count."""
    document = fitz.open(stream=data, filetype="pdf")
    if document.needs_pass:
        document.close()
        raise ValueError("cannot open encrypted document")

    release_document_worker(document_id)
    _loaded_documents[document_id] = document
    return document.page_count


def render_page_worker(document_id: str, page_number: int, scale: float, image_format: str) -> RenderedPage:
    """Render one 1-indexed page of a loaded document to an encoded image."""
    document = _loaded_documents.get(document_id)
    if document is None:
        raise DocumentNotLoaded(document_id)

    page = document.load_page(page_number - 1)
    pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
    return RenderedPage(
        data=pixmap.tobytes(PIXMAP_OUTPUTS[image_format]),
        width=pixmap.width,
        height=pixmap.height
    )


def release_document_worker(document_id: str) -> bool:
    document = _loaded_documents.pop(document_id, None)
    if document is None:
        return False
    document.close()
    return True


@dataclass
class WorkerSourceConfig:
    """Ordered worker sources to try; ``inline`` is always the final fallback."""
    sources: List[str] = field(default_factory=lambda: list(DECODE_WORKER_SOURCES))

    def __post_init__(self):
        unknown = [source for source in self.sources if source not in KNOWN_SOURCES]
        if unknown:
            raise ValueError(f"Unknown decode worker sources: {unknown}")

        ordered: List[str] = []
        for source in self.sources:
            if source != INLINE and source not in ordered:
                ordered.append(source)
        ordered.append(INLINE)
        self.sources = ordered


class DecodeEngineClient:
    """
    Runs PyMuPDF work on the active worker source.

    One instance is shared by the whole process. The active source only
    changes through advance_source(), which the rasterizer calls after an
    open attempt failed because the worker itself could not run.

    A document's bytes are sent to the worker once, by open_document();
    page renders only send the document id. The client keeps the bytes of
    every open document so a replacement worker can load it again.
    """

    def __init__(self, config: Optional[WorkerSourceConfig] = None):
        self.config = config or WorkerSourceConfig()
        self._index: Optional[int] = None
        self._executor: Optional[Executor] = None
        self._documents: Dict[str, bytes] = {}

    @property
    def active_source(self) -> Optional[str]:
        if self._index is None:
            return None
        return self.config.sources[self._index]

    def configure_initial(self) -> str:
        """Activate the first source unless one is already active."""
        if self._index is None:
            self._index = 0
            logger.info(f"Decode worker source: {self.active_source}")
        return self.active_source

    def advance_source(self) -> bool:
        """
        Switch to the next worker source.

        Returns:
            False if the inline fallback was already active
        """
        self.configure_initial()
        if self._index >= len(self.config.sources) - 1:
            logger.error("All decode worker sources exhausted")
            return False

        previous = self.active_source
        self._shutdown_executor()
        self._index += 1
        logger.warning(
            f"Switching decode worker source from {previous} to {self.active_source}",
            extra={"worker_source": self.active_source}
        )
        return True

    async def open_document(self, data: bytes) -> LoadedDocument:
        """
        Load a document into the worker.

        Returns:
            LoadedDocument whose id is passed to render_page() and release_document()
        """
        document_id = uuid.uuid4().hex
        self._documents[document_id] = data
        try:
            page_count = await self._run(load_document_worker, document_id, data)
        except BaseException:
            self._documents.pop(document_id, None)
            raise
        return LoadedDocument(document_id=document_id, page_count=page_count)

    async def render_page(
        self,
        document_id: str,
        page_number: int,
        scale: float,
        image_format: str = "png"
    ) -> RenderedPage:
        """Render one page, loading the document again if the worker was replaced."""
        try:
            return await self._run(render_page_worker, document_id, page_number, scale, image_format)
        except DocumentNotLoaded:
            data = self._documents.get(document_id)
            if data is None:
                raise
            logger.info(f"Reloading document {document_id} into a new {self.active_source} worker")
            await self._run(load_document_worker, document_id, data)
            return await self._run(render_page_worker, document_id, page_number, scale, image_format)

    def release_document(self, document_id: str) -> None:
        """Forget a document and free it in the worker without waiting."""
        if self._documents.pop(document_id, None) is None:
            return

        if self.active_source == INLINE or self._executor is None:
            release_document_worker(document_id)
            return

        try:
            self._executor.submit(release_document_worker, document_id)
        except (BrokenExecutor, RuntimeError) as e:
            # The worker is gone and its documents with it
            logger.debug(f"Could not release document {document_id}: {e}")

    def discard_executor(self) -> None:
        """
        Throw away the current executor, killing its worker process if any.

        Used when a job is stuck or the worker died; the next call starts a
        fresh worker on the same source.
        """
        if self._executor is None:
            return

        executor = self._executor
        # ProcessPoolExecutor has no public way to reach its children
        processes = list((getattr(executor, "_processes", None) or {}).values())
        self._shutdown_executor()
        for process in processes:
            if process.is_alive():
                process.terminate()

        logger.warning(
            f"Discarded {self.active_source} decode worker",
            extra={"worker_source": self.active_source}
        )

    def close(self) -> None:
        self._shutdown_executor()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        source = self.configure_initial()
        if source == INLINE:
            return fn(*args)

        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(self._get_executor(source), fn, *args)
        except (BrokenExecutor, RuntimeError, OSError, NotImplementedError) as e:
            self.discard_executor()
            raise RuntimeLoadError(
                f"Failed to start {source} decode worker: {e}",
                details={"worker_source": source, "original_error": str(e)}
            ) from e

        try:
            return await future
        except BrokenExecutor as e:
            self.discard_executor()
            raise RuntimeLoadError(
                f"{source} decode worker terminated: {e}",
                details={"worker_source": source, "original_error": str(e)}
            ) from e

    def _get_executor(self, source: str) -> Executor:
        if self._executor is None:
            if source == PROCESS:
                self._executor = ProcessPoolExecutor(max_workers=1)
            else:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="decode-worker")
        return self._executor

    def _shutdown_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
