"""Current-page state machine for the book viewer."""
import logging
from typing import Optional

from models.viewer import ViewerState

logger = logging.getLogger(__name__)


class PageNavigator:
    """
    Owns the viewer state and the index of the page on screen.

    States: LOADING -> READY -> UNMOUNTED, with LOADING -> FAILED for fatal
    errors. Navigation is only accepted in READY and never leaves
    [0, total_pages - 1]; out-of-range requests are no-ops.

    With a page-flip widget attached, next/prev/goto only request a flip.
    The index changes when the widget reports the flip through
    on_flip_completed().
    """

    def __init__(self, flip_widget: bool = False):
        self.flip_widget = flip_widget
        self.state = ViewerState.LOADING
        self.total_pages = 0
        self.current_index = 0
        self.pending_index: Optional[int] = None

    @property
    def can_go_next(self) -> bool:
        return self.state == ViewerState.READY and self.current_index < self.total_pages - 1

    @property
    def can_go_prev(self) -> bool:
        return self.state == ViewerState.READY and self.current_index > 0

    def mark_ready(self, total_pages: int) -> None:
        """Enter READY once every page has been rendered."""
        if self.state != ViewerState.LOADING:
            return
        self.total_pages = total_pages
        self.current_index = 0
        self.pending_index = None
        self.state = ViewerState.READY
        logger.debug(f"Viewer ready with {total_pages} pages")

    def mark_failed(self) -> None:
        if self.state == ViewerState.LOADING:
            self.state = ViewerState.FAILED

    def reset(self) -> None:
        """Go back to LOADING for a new document or a reload."""
        if self.state == ViewerState.UNMOUNTED:
            return
        self.state = ViewerState.LOADING
        self.total_pages = 0
        self.current_index = 0
        self.pending_index = None

    def unmount(self) -> None:
        self.state = ViewerState.UNMOUNTED
        self.pending_index = None

    def next(self) -> int:
        if not self.can_go_next:
            return self.current_index
        return self._move_to(self.current_index + 1)

    def prev(self) -> int:
        if not self.can_go_prev:
            return self.current_index
        return self._move_to(self.current_index - 1)

    def goto_page(self, index: int) -> int:
        if self.state != ViewerState.READY or not 0 <= index < self.total_pages:
            return self.current_index
        return self._move_to(index)

    def on_flip_completed(self, index: int) -> bool:
        """
        Adopt the page the flip widget says is now on screen.

        Returns:
            True if the index was accepted
        """
        if self.state != ViewerState.READY or not 0 <= index < self.total_pages:
            return False
        self.current_index = index
        self.pending_index = None
        return True

    def _move_to(self, index: int) -> int:
        if self.flip_widget:
            self.pending_index = index
            return index
        self.current_index = index
        return index
