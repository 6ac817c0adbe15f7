"""Viewer session: resolve a book, rasterize it, and track the page on screen."""
import asyncio
import logging
from functools import partial
from typing import AsyncIterator, List, Optional, Tuple

from models.api import BookInfo, ErrorInfo, Progress, SessionResponse
from models.document import DecodeProgress, DocumentReference, PageImage
from models.viewer import ViewerState
from services.asset_resolver import AssetResolver
from services.errors import BookViewerError
from services.lifecycle import LifecycleGuard
from services.page_navigator import PageNavigator
from services.rasterizer import PageRasterizer

logger = logging.getLogger(__name__)


class ViewerSession:
    """
    One open book viewer.

    Each load() runs resolve-then-rasterize as a single asyncio task guarded
    by a LifecycleGuard. Starting a new load tears the previous one down
    first, so at most one pipeline writes to the page list at a time.
    """

    def __init__(
        self,
        session_id: str,
        resolver: AssetResolver,
        rasterizer: PageRasterizer,
        flip_widget: bool = False
    ):
        self.session_id = session_id
        self.resolver = resolver
        self.rasterizer = rasterizer
        self.navigator = PageNavigator(flip_widget=flip_widget)
        self.guard = LifecycleGuard()

        self.reference: Optional[DocumentReference] = None
        self.pages: List[PageImage] = []
        self.progress: Optional[DecodeProgress] = None
        self.error: Optional[BookViewerError] = None

        self._request: Optional[Tuple[Optional[str], Optional[str]]] = None
        self._subscribers: List[asyncio.Queue] = []
        self._closed = False

    @property
    def state(self) -> ViewerState:
        return self.navigator.state

    async def load(self, slug: Optional[str] = None, file: Optional[str] = None) -> None:
        """
        Start loading a book, cancelling any load still in flight.

        Returns as soon as the pipeline task is started.
        """
        if self._closed:
            raise RuntimeError(f"Session {self.session_id} is closed")

        await self._teardown()

        self._request = (slug, file)
        self.guard = LifecycleGuard()
        self.reference = None
        self.pages = []
        self.progress = None
        self.error = None
        self.navigator.reset()
        self._publish()

        guard = self.guard
        guard.attach(asyncio.create_task(self._run(guard, slug, file)))
        logger.info(
            f"Session {self.session_id} loading slug={slug!r} file={file!r}",
            extra={"session_id": self.session_id}
        )

    async def reload(self) -> None:
        """Retry the last load from scratch."""
        if self._request is None:
            raise RuntimeError(f"Session {self.session_id} has nothing to reload")
        slug, file = self._request
        await self.load(slug=slug, file=file)

    async def wait_loaded(self) -> ViewerState:
        """Wait for the current pipeline to finish and return the resulting state."""
        if self.guard.task is not None:
            await asyncio.wait({self.guard.task})
        return self.state

    async def close(self) -> None:
        """Unmount the viewer; nothing changes the session after this."""
        if self._closed:
            return
        self._closed = True
        self.navigator.unmount()
        await self._teardown()
        self._publish()
        logger.info(f"Session {self.session_id} closed", extra={"session_id": self.session_id})

    def next(self) -> int:
        return self.navigator.next()

    def prev(self) -> int:
        return self.navigator.prev()

    def goto_page(self, index: int) -> int:
        return self.navigator.goto_page(index)

    def on_flip_completed(self, index: int) -> bool:
        return self.navigator.on_flip_completed(index)

    def page(self, index: int) -> PageImage:
        """
        Get a rendered page.

        Raises:
            IndexError: If the session is not ready or the index is out of range
        """
        if self.state != ViewerState.READY or not 0 <= index < len(self.pages):
            raise IndexError(f"Page {index} is not available")
        return self.pages[index]

    def snapshot(self) -> SessionResponse:
        """Current session state for the API."""
        book = None
        if self.reference is not None:
            book = BookInfo(
                slug=self.reference.slug,
                title=self.reference.title,
                file_url=self.reference.source_url
            )

        progress = None
        if self.progress is not None:
            progress = Progress(
                completed_pages=self.progress.completed_pages,
                total_pages=self.progress.total_pages,
                fraction=self.progress.fraction
            )

        error = None
        if self.error is not None:
            error = ErrorInfo(**self.error.to_dict())

        return SessionResponse(
            session_id=self.session_id,
            state=self.state.value,
            book=book,
            progress=progress,
            current_page=self.navigator.current_index,
            total_pages=self.navigator.total_pages,
            pending_page=self.navigator.pending_index,
            can_go_next=self.navigator.can_go_next,
            can_go_prev=self.navigator.can_go_prev,
            placeholder_pages=[page.page_number for page in self.pages if page.placeholder],
            error=error
        )

    async def watch(self) -> AsyncIterator[SessionResponse]:
        """Yield a snapshot now and after every change until loading is over."""
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            snapshot = self.snapshot()
            yield snapshot
            while not ViewerState(snapshot.state).is_terminal:
                snapshot = await queue.get()
                yield snapshot
        finally:
            self._subscribers.remove(queue)

    async def _run(self, guard: LifecycleGuard, slug: Optional[str], file: Optional[str]) -> None:
        try:
            reference = await asyncio.to_thread(self.resolver.resolve, slug=slug, file=file)
            if not guard.apply(partial(self._set_reference, reference)):
                return

            pages = await self.rasterizer.rasterize(
                reference.source_url,
                on_progress=lambda progress: guard.apply(partial(self._set_progress, progress)),
                cancel_token=guard.token
            )
            guard.apply(partial(self._finish, pages))

        except BookViewerError as e:
            guard.apply(partial(self._fail, e))
        except Exception as e:
            logger.error(
                f"Unexpected error loading book in session {self.session_id}: {e}",
                exc_info=True,
                extra={"session_id": self.session_id}
            )
            guard.apply(partial(
                self._fail,
                BookViewerError(
                    f"Failed to load book: {e}",
                    details={"error_type": type(e).__name__}
                )
            ))

    async def _teardown(self) -> None:
        self.guard.unmount()
        await self.guard.wait_closed()

    def _set_reference(self, reference: DocumentReference) -> None:
        self.reference = reference
        self._publish()

    def _set_progress(self, progress: DecodeProgress) -> None:
        self.progress = progress
        self._publish()

    def _finish(self, pages: List[PageImage]) -> None:
        self.pages = pages
        self.navigator.mark_ready(len(pages))
        self._publish()
        logger.info(
            f"Session {self.session_id} ready with {len(pages)} pages",
            extra={"session_id": self.session_id}
        )

    def _fail(self, error: BookViewerError) -> None:
        self.error = error
        self.navigator.mark_failed()
        self._publish()
        logger.error(
            f"Session {self.session_id} failed: {error.error.message}",
            extra={
                "session_id": self.session_id,
                "error_code": error.error.code,
                "error_details": error.error.details
            }
        )

    def _publish(self) -> None:
        if not self._subscribers:
            return
        snapshot = self.snapshot()
        for queue in self._subscribers:
            queue.put_nowait(snapshot)
