# app/routers/webhook.py
"""
Provider push endpoint.
POST /webhooks/hikvision/{branch_id} - receives access events (JSON, XML or multipart).

Always answers 200 quickly: the provider retries on anything else, and the
events are deduplicated by eventId anyway. Ingestion runs after the response.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session
from app.database import SessionLocal, get_db
from app.exceptions import UnknownEventShapeError
from app.services.credential_store import get_credential
from app.services.event_parser import ParsedAccessEvent, parse_webhook_body
from app.services.event_pipeline import event_pipeline
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


async def ingest_webhook_events(events: list[ParsedAccessEvent]):
    # Fresh session: the request's session is closed once the response is sent
    db = SessionLocal()
    try:
        # Earlier pushes of this branch that a consumer asked to retry go first
        await event_pipeline.replay_pending(db, events[0].branch_id)
        result = await event_pipeline.ingest(db, events, source="webhook")
        logger.info(f"Webhook ingest: {result.stored} new, {result.duplicates} duplicates, "
                    f"{len(result.failed)} pending retry")
    except Exception as e:
        db.rollback()
        ids = [ev.event_id for ev in events]
        logger.error(f"Webhook ingest failed for events {ids}: {e}", exc_info=True)
    finally:
        db.close()


@router.post("/webhooks/hikvision/{branch_id}", summary="Provider webhook: access events")
async def receive_webhook(branch_id: str, request: Request, background_tasks: BackgroundTasks,
                          db: Session = Depends(get_db)):
    raw_body = await request.body()
    if not raw_body:
        return {"status": "ignored", "reason": "empty body"}

    if get_credential(db, branch_id) is None:
        logger.warning(f"Webhook for unknown branch {branch_id} ({len(raw_body)} bytes) ignored")
        return {"status": "ignored", "reason": "unknown branch"}

    content_type = request.headers.get("content-type", "")
    logger.info(f"Webhook for branch {branch_id} | {len(raw_body)} bytes | {content_type}")

    try:
        events, rejected = parse_webhook_body(raw_body, branch_id, content_type)
    except UnknownEventShapeError as e:
        logger.warning(f"Webhook body for branch {branch_id} not understood: {e}")
        return {"status": "ignored", "reason": str(e)}

    if events:
        background_tasks.add_task(ingest_webhook_events, events)
    return {"status": "accepted", "events": len(events), "rejected": rejected}
