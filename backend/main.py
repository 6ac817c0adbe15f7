"""Main entry point for the Book Viewer API."""
import logging
from typing import Optional
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse

from config import PORT, LOG_LEVEL, LOG_FORMAT, CORS_ORIGINS, DECODE_WORKER_SOURCES
from logger import setup_logging
from models.api import SessionResponse
from services.asset_resolver import AssetResolver
from services.book_catalog import BookCatalog
from services.decode_engine import DecodeEngineClient, WorkerSourceConfig
from services.rasterizer import PageRasterizer
from services.session_registry import SessionRegistry
from services.viewer_session import ViewerSession

# Initialize logging
if LOG_FORMAT == "json":
    setup_logging(LOG_LEVEL)
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Book Viewer",
    description="Renders travel journal books page by page for the site's book viewer",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
decode_engine: DecodeEngineClient = None
session_registry: SessionRegistry = None


def build_services() -> SessionRegistry:
    """Wire the catalog, resolver, decode engine and rasterizer into a session registry."""
    global decode_engine

    catalog = BookCatalog()
    catalog.ensure_table()
    logger.info("Initialized BookCatalog")

    resolver = AssetResolver(catalog)
    logger.info("Initialized AssetResolver")

    decode_engine = DecodeEngineClient(WorkerSourceConfig(DECODE_WORKER_SOURCES))
    decode_engine.configure_initial()
    logger.info(f"Initialized DecodeEngineClient with sources {decode_engine.config.sources}")

    rasterizer = PageRasterizer(decode_engine)
    logger.info("Initialized PageRasterizer")

    return SessionRegistry(
        lambda session_id, flip_widget: ViewerSession(
            session_id, resolver, rasterizer, flip_widget=flip_widget
        )
    )


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global session_registry

    logger.info("Initializing Book Viewer services...")

    try:
        session_registry = build_services()
        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Close open sessions and stop the decode worker."""
    if session_registry is not None:
        await session_registry.close_all()
    if decode_engine is not None:
        decode_engine.close()


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "Book Viewer API"}


@app.get("/health")
async def health():
    """Detailed health check."""
    return {
        "status": "healthy",
        "service": "book-viewer",
        "version": "1.0.0",
        "worker_source": decode_engine.active_source if decode_engine else None,
        "open_sessions": len(session_registry) if session_registry else 0
    }


@app.get("/book/{slug}", response_model=SessionResponse)
async def open_book(slug: str, flip: bool = Query(False)) -> SessionResponse:
    """
    Open a viewer session for a book slug.

    The book is resolved and rasterized in the background; poll
    ``/sessions/{id}`` or follow ``/sessions/{id}/events`` for progress.
    """
    session = await session_registry.open(slug=slug, flip_widget=flip)
    return session.snapshot()


@app.get("/book-viewer", response_model=SessionResponse)
async def open_book_file(
    file: Optional[str] = Query(None),
    flip: bool = Query(False)
) -> SessionResponse:
    """Open a viewer session for an explicit PDF URL."""
    if not file or not file.strip():
        raise HTTPException(
            status_code=400,
            detail="No book specified. Please provide either a slug or file parameter."
        )
    session = await session_registry.open(file=file.strip(), flip_widget=flip)
    return session.snapshot()


@app.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str) -> SessionResponse:
    """Current state of a viewer session."""
    return _get_session(session_id).snapshot()


@app.get("/sessions/{session_id}/events")
async def session_events(session_id: str):
    """
    Stream session snapshots as Server-Sent Events.

    One event is sent immediately and one after every change, until the
    session is ready, has failed, or was closed.
    """
    session = _get_session(session_id)

    async def generate_stream():
        """Generator function for streaming snapshots."""
        async for snapshot in session.watch():
            data = f"data: {snapshot.model_dump_json()}\n\n"
            yield data.encode('utf-8')

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable buffering in nginx
        }
    )


@app.get("/sessions/{session_id}/pages/{index}")
async def get_page(session_id: str, index: int) -> Response:
    """Image bytes of one rendered page (0-indexed)."""
    session = _get_session(session_id)
    try:
        page = session.page(index)
    except IndexError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return Response(
        content=page.data,
        media_type=page.mime_type,
        headers={"Cache-Control": "private, max-age=3600"}
    )


@app.post("/sessions/{session_id}/next", response_model=SessionResponse)
async def next_page(session_id: str) -> SessionResponse:
    session = _get_session(session_id)
    session.next()
    return session.snapshot()


@app.post("/sessions/{session_id}/prev", response_model=SessionResponse)
async def prev_page(session_id: str) -> SessionResponse:
    session = _get_session(session_id)
    session.prev()
    return session.snapshot()


@app.post("/sessions/{session_id}/goto/{index}", response_model=SessionResponse)
async def goto_page(session_id: str, index: int) -> SessionResponse:
    session = _get_session(session_id)
    session.goto_page(index)
    return session.snapshot()


@app.post("/sessions/{session_id}/flip/{index}", response_model=SessionResponse)
async def flip_completed(session_id: str, index: int) -> SessionResponse:
    """Page-flip widget reports that ``index`` is now on screen."""
    session = _get_session(session_id)
    session.on_flip_completed(index)
    return session.snapshot()


@app.post("/sessions/{session_id}/reload", response_model=SessionResponse)
async def reload_session(session_id: str) -> SessionResponse:
    """Retry loading the session's book from scratch."""
    session = _get_session(session_id)
    try:
        await session.reload()
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return session.snapshot()


@app.delete("/sessions/{session_id}")
async def close_session(session_id: str):
    """Close the viewer (the user navigated away)."""
    try:
        await session_registry.close(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"status": "closed", "session_id": session_id}


def _get_session(session_id: str) -> ViewerSession:
    try:
        return session_registry.get(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting Book Viewer API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
