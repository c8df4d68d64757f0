import hmac
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from .config import settings
from .context import PipelineContext, get_context
from .db import fetch_db_info
from .errors import PayloadError, UpstreamError
from .events import handle
from .jobs import serialize_job
from .logging_utils import configure_logging, get_logger
from .pipeline import complete_from_callback
from .schemas import CallbackRequest

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level)
    if not settings.slack_signing_secret:
        logger.error("app.config_missing setting=SLACK_SIGNING_SECRET")
    if not settings.slack_bot_token:
        logger.warning("app.config_missing setting=SLACK_BOT_TOKEN")
    yield


app = FastAPI(title="Meeting Minutes Pipeline", lifespan=lifespan)


@app.get("/health")
def health(ctx: PipelineContext = Depends(get_context)) -> dict:
    try:
        info = fetch_db_info(ctx.store.engine)
    except Exception as exc:  # pragma: no cover - safety
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"status": "ok", "db": info}


@app.post("/events")
async def events_endpoint(
    request: Request, ctx: PipelineContext = Depends(get_context)
) -> Response:
    raw_body = await request.body()
    result = await run_in_threadpool(handle, ctx, raw_body, dict(request.headers))
    if result.content_type == "text/plain":
        return PlainTextResponse(str(result.body), status_code=result.status)
    return JSONResponse(result.body, status_code=result.status)


@app.post("/jobs/callback")
def jobs_callback_endpoint(
    payload: CallbackRequest,
    x_callback_secret: Optional[str] = Header(default=None),
    ctx: PipelineContext = Depends(get_context),
) -> dict:
    expected = ctx.settings.callback_secret
    if expected:
        if not x_callback_secret or not hmac.compare_digest(expected, x_callback_secret):
            raise HTTPException(status_code=401, detail="invalid callback secret")
    else:
        logger.warning("jobs_callback.unauthenticated job_id=%s", payload.job_id)

    try:
        result = complete_from_callback(payload, ctx)
    except PayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except UpstreamError as exc:
        raise HTTPException(status_code=500, detail="callback processing failed") from exc
    return {"message": "Job processed", **result}


@app.get("/jobs/{job_id}")
def get_job_endpoint(job_id: str, ctx: PipelineContext = Depends(get_context)) -> dict:
    job = ctx.store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return serialize_job(job)
