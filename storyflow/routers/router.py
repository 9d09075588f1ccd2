# routers/router.py
"""
FastAPI Router for the story publishing pipeline
"""

from typing import List, Optional

import redis
import requests
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status
)
from starlette.concurrency import run_in_threadpool

from storyflow.core.auth import AuthenticatedPrincipal, verify_jwt_token
from storyflow.core.config import settings
from storyflow.core.dependencies import (
    get_approval_gateway,
    get_orchestrator,
    get_publishing_gateway,
    get_queue_store,
    get_redis_client,
    get_runtime_config,
    get_scheduled_publisher,
    get_telegram_client,
    get_timeout_reaper,
)
from storyflow.core.exceptions import (
    CallbackError,
    ItemNotFoundError,
    QueueStoreError,
    StoryflowError,
)
from storyflow.core.logger import logger
from storyflow.core.rate_limiter import limit_param, limiter
from storyflow.core.redis_client import redis_health_check
from storyflow.core.runtime_config import RuntimeConfigProvider
from storyflow.schemas.queue_models import QueueItem, QueueStatus
from storyflow.schemas.request_models import (
    BatchResult,
    EnqueueRequest,
    HealthResponse,
    ProcessOptions,
    ProcessResult,
    PublishSummary,
    QueueStatsResponse,
    ReaperSummary,
    RuntimeConfigUpdate,
    TelegramUpdate,
    WebhookResponse,
)
from storyflow.services.approval_gateway import ApprovalGateway, ParsedCallback
from storyflow.services.pipeline_orchestrator import PipelineOrchestrator
from storyflow.services.queue_store import QueueStore
from storyflow.services.scheduled_publisher import ScheduledPublisher
from storyflow.services.timeout_reaper import TimeoutReaper


# ============================================================================
# ROUTER CONFIGURATION
# ============================================================================

router = APIRouter(
    prefix="/api/v1",
    tags=["Story Pipeline"],
    responses={
        403: {"description": "Forbidden - Invalid JWT"},
        429: {"description": "Too Many Requests"},
        500: {"description": "Internal Server Error"}
    }
)


# ============================================================================
# HEALTH CHECK ENDPOINTS
# ============================================================================

@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Service Health Check",
    description="Validates service connectivity and dependencies"
)
@limiter.limit(limit_param)
async def check_health(
    request: Request,
    redis_client: redis.Redis = Depends(get_redis_client),
    store: QueueStore = Depends(get_queue_store)
) -> HealthResponse:
    """
    Checks:
    - Redis connectivity and queue counts
    - Telegram bot reachability
    - Instagram token validity
    """
    health_status = HealthResponse(
        status="healthy",
        message="Story pipeline is operational"
    )

    if await run_in_threadpool(redis_health_check, redis_client):
        health_status.redis_status = "connected"
        health_status.queue = await run_in_threadpool(store.stats)
    else:
        health_status.redis_status = "error"
        health_status.status = "degraded"

    try:
        telegram = get_telegram_client()
        await run_in_threadpool(telegram.get_me)
        health_status.telegram_status = "connected"
    except HTTPException:
        health_status.telegram_status = "not configured"
    except StoryflowError as e:
        logger.error(f"Telegram health check failed: {e}")
        health_status.telegram_status = f"error: {str(e)[:100]}"
        health_status.status = "degraded"

    try:
        publisher = get_publishing_gateway()
        await run_in_threadpool(publisher.validate_token)
        health_status.instagram_status = "connected"
    except HTTPException:
        health_status.instagram_status = "not configured"
    except (StoryflowError, requests.RequestException) as e:
        logger.error(f"Instagram health check failed: {e}")
        health_status.instagram_status = f"error: {str(e)[:100]}"
        health_status.status = "degraded"

    return health_status


# ============================================================================
# TELEGRAM WEBHOOK
# ============================================================================

def _process_callback_in_background(
    gateway: ApprovalGateway,
    parsed: ParsedCallback,
    callback_id: Optional[str]
) -> None:
    try:
        result = gateway.process_callback(parsed, callback_id)
        logger.info(
            f"Callback processed: item={result.item_id}, outcome={result.outcome.value}"
        )
    except Exception:
        logger.exception(f"Callback processing failed: item={parsed.item_id}")


@router.post(
    "/telegram/webhook",
    response_model=WebhookResponse,
    status_code=status.HTTP_200_OK,
    summary="Telegram Webhook",
    description="Approve / reject / regenerate callbacks from the reviewer chat"
)
async def telegram_webhook(
    update: TelegramUpdate,
    background_tasks: BackgroundTasks,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    gateway: ApprovalGateway = Depends(get_approval_gateway)
) -> WebhookResponse:
    """
    Authorization and parsing happen before responding (403 / 400 / 404).
    The callback itself runs after the response so Telegram gets a prompt
    200 and does not retry-storm.
    """
    if settings.TELEGRAM_WEBHOOK_SECRET and x_telegram_bot_api_secret_token != settings.TELEGRAM_WEBHOOK_SECRET:
        logger.warning("Telegram webhook called with an invalid secret token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")

    callback = update.callback_query
    if callback is None:
        return WebhookResponse(ok=True, message="Not a callback query, ignored")

    try:
        parsed = await run_in_threadpool(
            gateway.prepare_callback, callback.data, callback.chat_id, callback.id
        )
    except CallbackError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except ItemNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")

    background_tasks.add_task(_process_callback_in_background, gateway, parsed, callback.id)
    return WebhookResponse(ok=True, action=parsed.action.value)


# ============================================================================
# SCHEDULED JOBS
# ============================================================================

@router.post(
    "/jobs/reap-timeouts",
    response_model=ReaperSummary,
    status_code=status.HTTP_200_OK,
    summary="Expire Unanswered Approvals"
)
async def reap_timeouts(
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    reaper: TimeoutReaper = Depends(get_timeout_reaper)
) -> ReaperSummary:
    try:
        summary = await run_in_threadpool(reaper.run)
        return ReaperSummary(**summary)
    except Exception as e:
        logger.exception(f"Timeout reaper failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Timeout reaper failed: {str(e)}"
        )


@router.post(
    "/jobs/process-next",
    response_model=ProcessResult,
    status_code=status.HTTP_200_OK,
    summary="Process Next Queue Item"
)
async def process_next(
    body: Optional[ProcessOptions] = None,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
) -> ProcessResult:
    try:
        return await run_in_threadpool(orchestrator.process_next_item, body or ProcessOptions())
    except Exception as e:
        logger.exception(f"Processing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Processing failed: {str(e)}"
        )


@router.post(
    "/jobs/process-all",
    response_model=BatchResult,
    status_code=status.HTTP_200_OK,
    summary="Process All Pending Items"
)
async def process_all(
    body: Optional[ProcessOptions] = None,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator)
) -> BatchResult:
    try:
        return await run_in_threadpool(orchestrator.process_all_pending, body or ProcessOptions())
    except Exception as e:
        logger.exception(f"Batch processing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Batch processing failed: {str(e)}"
        )


@router.post(
    "/jobs/publish-scheduled",
    response_model=PublishSummary,
    status_code=status.HTTP_200_OK,
    summary="Publish Due Scheduled Items"
)
async def publish_scheduled(
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    publisher: ScheduledPublisher = Depends(get_scheduled_publisher)
) -> PublishSummary:
    try:
        summary = await run_in_threadpool(publisher.publish_due)
        return PublishSummary(**summary)
    except Exception as e:
        logger.exception(f"Scheduled publishing failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Scheduled publishing failed: {str(e)}"
        )


# ============================================================================
# QUEUE ENDPOINTS
# ============================================================================

@router.post(
    "/queue",
    response_model=QueueItem,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue Item"
)
@limiter.limit(limit_param)
async def enqueue_item(
    request: Request,
    body: EnqueueRequest,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    store: QueueStore = Depends(get_queue_store)
) -> QueueItem:
    try:
        item = QueueItem(**body.to_item_fields())
        return await run_in_threadpool(store.enqueue, item)
    except QueueStoreError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get(
    "/queue",
    response_model=List[QueueItem],
    summary="List Items By Status"
)
@limiter.limit(limit_param)
async def list_items(
    request: Request,
    status_filter: QueueStatus = Query(QueueStatus.PENDING, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    store: QueueStore = Depends(get_queue_store)
) -> List[QueueItem]:
    return await run_in_threadpool(store.list_by_status, status_filter, limit)


@router.get(
    "/queue/stats",
    response_model=QueueStatsResponse,
    summary="Queue Counts Per Status"
)
@limiter.limit(limit_param)
async def queue_stats(
    request: Request,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    store: QueueStore = Depends(get_queue_store)
) -> QueueStatsResponse:
    return QueueStatsResponse(stats=await run_in_threadpool(store.stats))


@router.get(
    "/queue/{item_id}",
    response_model=QueueItem,
    summary="Get Item"
)
@limiter.limit(limit_param)
async def get_item(
    request: Request,
    item_id: str,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    store: QueueStore = Depends(get_queue_store)
) -> QueueItem:
    item = await run_in_threadpool(store.get, item_id)
    if item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return item


@router.delete(
    "/queue/{item_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Item"
)
@limiter.limit(limit_param)
async def delete_item(
    request: Request,
    item_id: str,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    store: QueueStore = Depends(get_queue_store)
) -> Response:
    try:
        deleted = await run_in_threadpool(store.delete, item_id)
    except QueueStoreError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Item not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# RUNTIME CONFIG
# ============================================================================

@router.get("/config/runtime", summary="Current Runtime Config")
@limiter.limit(limit_param)
async def read_runtime_config(
    request: Request,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    runtime_config: RuntimeConfigProvider = Depends(get_runtime_config)
):
    return await run_in_threadpool(runtime_config.as_dict)


@router.put("/config/runtime", summary="Update Runtime Config")
@limiter.limit(limit_param)
async def update_runtime_config(
    request: Request,
    body: RuntimeConfigUpdate,
    principal: AuthenticatedPrincipal = Depends(verify_jwt_token),
    runtime_config: RuntimeConfigProvider = Depends(get_runtime_config)
):
    changes = body.model_dump(exclude_none=True)

    def apply():
        for key, value in changes.items():
            runtime_config.set(key, value)
        return runtime_config.as_dict()

    config = await run_in_threadpool(apply)
    logger.info(f"Runtime config updated: {changes}")
    return config
