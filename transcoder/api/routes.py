"""API routes for batch sessions, processing, retry, previews and export."""
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Body, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from transcoder.archive import ArchiveExporter
from transcoder.config import (
    ARCHIVE_NAME,
    INPUT_EXTENSIONS,
    MAX_CONCURRENCY,
    MAX_DIMENSION,
    MAX_IMAGE_SIZE_BYTES,
    MAX_IMAGES_PER_UPLOAD,
    OUTPUT_FORMATS,
)
from transcoder.conversion.models import BatchResult, ConversionOptions
from transcoder.db import delete_session_data, get_session_activities, get_session_stats, record_export, record_item
from transcoder.errors import ArchiveError, NothingToExportError, ResourceError, StateTransitionError, ValidationError
from transcoder.session import BatchSession, get_session_registry

logger = logging.getLogger("transcoder.api")
router = APIRouter(prefix="/api", tags=["transcoder"])


def _session_or_404(session_id: str) -> BatchSession:
    session = get_session_registry().get(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


def _item_or_404(session: BatchSession, item_id: str):
    item = session.get(item_id)
    if item is None:
        raise HTTPException(404, "Item not found")
    return item


def _options_or_400(data: Optional[dict]) -> Optional[ConversionOptions]:
    if not data:
        return None
    try:
        return ConversionOptions.from_dict(data)
    except ValidationError as e:
        raise HTTPException(400, str(e))


def _record_outcomes(session: BatchSession, result: BatchResult) -> None:
    for item in result.succeeded + result.failed:
        try:
            record_item(session.session_id, item)
        except Exception as e:
            logger.warning("Could not record activity for %s: %s", item.id, e)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/formats")
def get_formats():
    return {
        "input": sorted(INPUT_EXTENSIONS),
        "output": OUTPUT_FORMATS,
        "resize_modes": ["fit", "crop"],
    }


@router.get("/limits")
def get_limits():
    """Return upload and processing limits for the client."""
    return {
        "max_images_per_upload": MAX_IMAGES_PER_UPLOAD,
        "max_image_size_mb": MAX_IMAGE_SIZE_BYTES // (1024 * 1024),
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
        "max_dimension": MAX_DIMENSION,
        "max_concurrency": MAX_CONCURRENCY,
    }


@router.post("/sessions")
async def create_session(options: Optional[dict] = Body(None, embed=True)):
    """Start a batch session. Optional default options apply to items added without their own."""
    default_options = _options_or_400(options)
    session = get_session_registry().create(default_options=default_options)
    return {"session_id": session.session_id, "default_options": session.default_options.to_dict()}


@router.delete("/sessions/{session_id}")
async def close_session(session_id: str, purge_history: bool = Query(False)):
    """Close the session: cancel in-flight work and release all previews."""
    if not get_session_registry().close(session_id):
        raise HTTPException(404, "Session not found")
    if purge_history:
        delete_session_data(session_id)
    return {"ok": True}


@router.post("/sessions/{session_id}/items")
async def add_items(
    session_id: str,
    files: list[UploadFile] = File(...),
    format: Optional[str] = Query(None, description="webp | jpeg | png | avif"),
    quality: Optional[int] = Query(None),
    width: Optional[int] = Query(None),
    height: Optional[int] = Query(None),
    maintain_aspect_ratio: bool = Query(True),
    resize_mode: str = Query("fit", description="fit | crop"),
):
    """Upload images into the session as pending items. Query options override the session default."""
    session = _session_or_404(session_id)
    options = None
    if format is not None or quality is not None or width is not None or height is not None:
        options = _options_or_400({
            "format": format or session.default_options.format.value,
            "quality": quality,
            "width": width,
            "height": height,
            "maintain_aspect_ratio": maintain_aspect_ratio,
            "resize_mode": resize_mode,
        })
    if len(files) > MAX_IMAGES_PER_UPLOAD:
        raise HTTPException(400, f"Max {MAX_IMAGES_PER_UPLOAD} images per upload")

    max_mb = MAX_IMAGE_SIZE_BYTES // (1024 * 1024)
    uploads: list[tuple[str, bytes]] = []
    for file in files:
        name = file.filename or "image"
        ext = Path(name).suffix.lower()
        if ext not in INPUT_EXTENSIONS:
            raise HTTPException(400, f"Unsupported format: {ext or name}")
        chunks = []
        total = 0
        while chunk := await file.read(1024 * 1024):
            total += len(chunk)
            if total > MAX_IMAGE_SIZE_BYTES:
                raise HTTPException(413, f"File too large: {name} (max {max_mb} MB)")
            chunks.append(chunk)
        uploads.append((name, b"".join(chunks)))

    try:
        items = [session.add(name, data, options) for name, data in uploads]
    except ValidationError as e:
        raise HTTPException(400, str(e))
    return {"items": [i.to_dict() for i in items]}


@router.get("/sessions/{session_id}/items")
async def list_items(session_id: str):
    session = _session_or_404(session_id)
    return {
        "items": [i.to_dict() for i in session.items],
        "retry_ids": session.retry.ids,
    }


@router.get("/sessions/{session_id}/items/{item_id}")
async def get_item(session_id: str, item_id: str):
    session = _session_or_404(session_id)
    return _item_or_404(session, item_id).to_dict()


@router.put("/sessions/{session_id}/items/{item_id}/options")
async def set_item_options(session_id: str, item_id: str, options: dict = Body(..., embed=True)):
    session = _session_or_404(session_id)
    _item_or_404(session, item_id)
    try:
        return session.set_options(item_id, ConversionOptions.from_dict(options)).to_dict()
    except ValidationError as e:
        raise HTTPException(400, str(e))
    except StateTransitionError as e:
        raise HTTPException(409, str(e))


@router.delete("/sessions/{session_id}/items/{item_id}")
async def remove_item(session_id: str, item_id: str):
    session = _session_or_404(session_id)
    _item_or_404(session, item_id)
    try:
        session.remove(item_id)
    except StateTransitionError as e:
        raise HTTPException(409, str(e))
    return {"ok": True}


@router.delete("/sessions/{session_id}/items")
async def clear_items(session_id: str):
    session = _session_or_404(session_id)
    try:
        removed = session.clear()
    except StateTransitionError as e:
        raise HTTPException(409, str(e))
    return {"ok": True, "removed": removed}


@router.post("/sessions/{session_id}/process")
async def process(
    session_id: str,
    options: Optional[dict] = Body(None, embed=True),
    concurrency: Optional[int] = Body(None, embed=True, ge=1, le=32),
):
    """Convert every pending item. Options, when given, become the default for pending items."""
    session = _session_or_404(session_id)
    new_options = _options_or_400(options)
    if new_options is not None:
        session.set_default_options(new_options)
    try:
        result = await session.process(concurrency_limit=concurrency)
    except ValidationError as e:
        raise HTTPException(400, str(e))
    except StateTransitionError as e:
        raise HTTPException(409, str(e))
    _record_outcomes(session, result)
    return {**result.summary(), "retry_ids": session.retry.ids}


@router.post("/sessions/{session_id}/retry")
async def retry_failed(session_id: str, concurrency: Optional[int] = Body(None, embed=True, ge=1, le=32)):
    """Resubmit the failed items of this session with their original options."""
    session = _session_or_404(session_id)
    try:
        result = await session.retry_failed(concurrency_limit=concurrency)
    except StateTransitionError as e:
        raise HTTPException(409, str(e))
    _record_outcomes(session, result)
    return {**result.summary(), "retry_ids": session.retry.ids}


@router.delete("/sessions/{session_id}/retry")
async def dismiss_failures(session_id: str):
    """Forget the retry set without touching item state."""
    session = _session_or_404(session_id)
    session.retry.clear()
    return {"ok": True}


@router.post("/sessions/{session_id}/items/{item_id}/cancel")
async def cancel_item(session_id: str, item_id: str):
    session = _session_or_404(session_id)
    _item_or_404(session, item_id)
    return {"cancelled": session.cancel(item_id)}


@router.post("/sessions/{session_id}/cancel")
async def cancel_all(session_id: str):
    session = _session_or_404(session_id)
    return {"cancelled": session.cancel_all()}


@router.get("/sessions/{session_id}/items/{item_id}/download")
async def download_item(session_id: str, item_id: str):
    """Download one converted image."""
    session = _session_or_404(session_id)
    item = _item_or_404(session, item_id)
    if item.result_bytes is None:
        raise HTTPException(404, "Item has no output yet")
    return Response(
        content=item.result_bytes,
        media_type=item.options.format.mime_type,
        headers={"Content-Disposition": f'attachment; filename="{item.output_name}"'},
    )


@router.get("/sessions/{session_id}/previews/{handle_id}")
async def get_preview(session_id: str, handle_id: str):
    """Serve the bytes behind a preview handle (input or result)."""
    session = _session_or_404(session_id)
    try:
        handle = session.read_preview(handle_id)
    except ResourceError:
        raise HTTPException(404, "Preview not found")
    return Response(content=handle.data, media_type=handle.media_type)


@router.post("/sessions/{session_id}/export")
async def export_archive(
    session_id: str,
    item_ids: Optional[list[str]] = Body(None, embed=True),
    folder_structure: str = Body("flat", embed=True),
):
    """Zip the done outputs (optionally only item_ids). Items whose bytes cannot be read are listed in X-Failed-Images."""
    session = _session_or_404(session_id)
    result = session.result()
    if not result.succeeded:
        raise HTTPException(404, "No converted images to export")
    exporter = ArchiveExporter(folder_structure=folder_structure)
    try:
        export = await asyncio.to_thread(exporter.export, result, item_ids)
    except NothingToExportError as e:
        raise HTTPException(404, str(e))
    except ArchiveError as e:
        logger.error("Export failed for session %s: %s", session_id, e)
        raise HTTPException(500, str(e))
    try:
        record_export(session_id, len(export.entries), len(export.failed_images), export.size)
    except Exception as e:
        logger.warning("Could not record export for %s: %s", session_id, e)
    return Response(
        content=export.archive,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{ARCHIVE_NAME}.zip"',
            "X-Archive-Entries": str(len(export.entries)),
            "X-Failed-Images": str(len(export.failed_images)),
            "X-Failed-Images-Detail": json.dumps([f.to_dict() for f in export.failed_images]),
        },
    )


@router.get("/sessions/{session_id}/stats")
def session_stats(session_id: str):
    """Aggregated conversion stats recorded for the session."""
    return get_session_stats(session_id)


@router.get("/sessions/{session_id}/activities")
def session_activities(session_id: str, limit: int = Query(50, ge=1, le=200)):
    return {"activities": get_session_activities(session_id, limit=limit)}
