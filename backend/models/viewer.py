"""Viewer state models."""
from enum import Enum


class ViewerState(str, Enum):
    """Lifecycle states of a book viewer session."""
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"
    UNMOUNTED = "unmounted"

    @property
    def is_terminal(self) -> bool:
        """True once no further progress updates will be published."""
        return self in (ViewerState.READY, ViewerState.FAILED, ViewerState.UNMOUNTED)
