"""
FastAPI Application — long-poll broker HTTP surface + broadcast relay.

Provides:
- Question submission and cursor-based long polling
- Attachment ingestion (JSON base64/data URL, multipart) and retrieval
- Answer ingestion
- Read-only admin listings and health
- WebSocket broadcast relay

Request validation failures are answered with 400 and the same
``{"ok": false, "error": ...}`` body as every other broker error.
"""
from __future__ import annotations

import structlog
from typing import Annotated, Any, Optional, Union
from urllib.parse import quote
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import Body, Depends, FastAPI, File, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StringConstraints

from broker.errors import BrokerError, NotFoundError, ValidationError
from broker.service import Broker
from config.settings import get_settings
from relay.broadcast import BroadcastRelay

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

NonEmptyStr = Annotated[str, StringConstraints(strict=True, min_length=1)]


class QuestionRequest(BaseModel):
    text: NonEmptyStr
    attachments: Any = None         # loose descriptions; a non-list means none


class AttachmentRequest(BaseModel):
    content: NonEmptyStr            # raw base64 or data:<mime>;base64,<payload>
    filename: Optional[str] = None
    mime: Optional[str] = None


class AnswerRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question_id: Union[StrictInt, NonEmptyStr] = Field(alias="questionId")
    answer: NonEmptyStr


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def get_broker(request: Request) -> Broker:
    return request.app.state.broker


def get_relay(request: Request) -> BroadcastRelay:
    return request.app.state.relay


def _parse_cursor(raw: Optional[str]) -> int:
    """Missing or non-numeric cursors mean "from the beginning"."""
    try:
        return max(int(raw), 0)
    except (TypeError, ValueError):
        return 0


def _parse_attachment_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise NotFoundError("Attachment not found")


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return f"{field}: {message}" if field else message


async def broker_error_handler(request: Request, exc: BrokerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _describe_validation_error(exc)
    logger.info("request_rejected", path=request.url.path, error=message)
    return JSONResponse(status_code=400, content={"ok": False, "error": message})


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(broker: Broker = None, relay: BroadcastRelay = None) -> FastAPI:
    settings = get_settings()
    broker = broker or Broker(settings.broker)
    relay = relay or BroadcastRelay()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("broker_started",
                    long_poll_timeout=broker.config.long_poll_timeout,
                    port=broker.config.port)
        yield
        broker.shutdown()
        logger.info("broker_stopped")

    app = FastAPI(
        title="Long-Poll Bridge API",
        description="Question broker with cursor-based long polling",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.broker = broker
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(BrokerError, broker_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(broker: Broker = Depends(get_broker), relay: BroadcastRelay = Depends(get_relay)):
        return {
            "status": "healthy",
            **broker.stats(),
            "relay_listeners": relay.listener_count,
        }

    # ══════════════════════════════════════════════════════════
    #  QUESTIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/questions")
    async def submit_question(req: QuestionRequest, broker: Broker = Depends(get_broker)):
        question = broker.submit_question(req.text, req.attachments)
        return {"ok": True, "question": question.to_wire()}

    @app.get("/v1/questions/long-poll")
    async def long_poll(cursor: Optional[str] = None, broker: Broker = Depends(get_broker)):
        batch = await broker.long_poll(_parse_cursor(cursor))
        if batch is None:
            return Response(status_code=204)
        return batch.to_wire()

    # ══════════════════════════════════════════════════════════
    #  ATTACHMENTS
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/attachments")
    async def store_attachment(req: AttachmentRequest, broker: Broker = Depends(get_broker)):
        attachment = broker.store_attachment(req.content, filename=req.filename, mime=req.mime)
        return {"ok": True, "attachment": attachment.to_wire()}

    @app.post("/v1/attachments/upload")
    async def upload_attachment(
        file: Optional[UploadFile] = File(None),
        broker: Broker = Depends(get_broker),
    ):
        if file is None:
            raise ValidationError("Missing file field")
        content = await file.read()
        if len(content) > broker.config.max_upload_bytes:
            raise ValidationError("File too large")
        attachment = broker.upload_attachment(file.filename, file.content_type, content)
        return {"ok": True, "attachment": attachment.to_wire()}

    @app.get("/v1/attachments/{attachment_id}")
    async def get_attachment(attachment_id: str, broker: Broker = Depends(get_broker)):
        blob = broker.fetch_attachment(_parse_attachment_id(attachment_id))
        return Response(
            content=blob.content,
            media_type=blob.mime,
            headers={"Content-Disposition": f'inline; filename="{quote(blob.filename)}"'},
        )

    # ══════════════════════════════════════════════════════════
    #  ANSWERS
    # ══════════════════════════════════════════════════════════

    @app.post("/v1/answers")
    async def submit_answer(req: AnswerRequest, broker: Broker = Depends(get_broker)):
        broker.submit_answer(req.question_id, req.answer)
        return {"ok": True}

    # ══════════════════════════════════════════════════════════
    #  ADMIN (read-only)
    # ══════════════════════════════════════════════════════════

    @app.get("/admin/questions")
    async def admin_questions(broker: Broker = Depends(get_broker)):
        return {"items": [q.to_wire() for q in broker.list_questions()]}

    @app.get("/admin/answers")
    async def admin_answers(broker: Broker = Depends(get_broker)):
        return {"items": [a.model_dump(mode="json") for a in broker.list_answers()]}

    @app.get("/admin/attachments")
    async def admin_attachments(broker: Broker = Depends(get_broker)):
        return {"items": [m.model_dump(mode="json") for m in broker.list_attachments()]}

    # ══════════════════════════════════════════════════════════
    #  RELAY
    # ══════════════════════════════════════════════════════════

    @app.post("/relay/send")
    async def relay_send(
        payload: dict[str, Any] = Body(...),
        relay: BroadcastRelay = Depends(get_relay),
    ):
        delivered = await relay.broadcast(payload)
        return {"ok": True, "delivered": delivered}

    @app.websocket("/relay/ws")
    async def relay_ws(websocket: WebSocket):
        relay: BroadcastRelay = websocket.app.state.relay
        await websocket.accept()
        relay.register(websocket)
        try:
            while True:
                data = await websocket.receive_text()
                logger.info("relay_message_received", size=len(data))
        except WebSocketDisconnect:
            pass
        finally:
            relay.unregister(websocket)

    return app


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    _broker_cfg = get_settings().broker
    uvicorn.run(app, host=_broker_cfg.host, port=_broker_cfg.port)
