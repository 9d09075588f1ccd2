import time
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from storyflow.routers.router import router
from storyflow.core.lifespan import lifespan
from storyflow.core.config import settings
from storyflow.core.logger import logger
from storyflow.core.rate_limiter import limiter

# CORS configuration
if settings.ENABLE_CORS and (settings.FRONTEND_ENDPOINT or settings.BACKEND_ENDPOINT):
    origins = [o for o in (settings.FRONTEND_ENDPOINT, settings.BACKEND_ENDPOINT) if o]
else:
    origins = ["*"]

# Initialize FastAPI app
app = FastAPI(
    title=settings.PROJECT_NAME,
    description="""
    Approval-gated Instagram Story publishing pipeline.

    ## Endpoints

    **POST /api/v1/telegram/webhook** - Telegram callback queries (approve / reject / regenerate)

    **POST /api/v1/jobs/*** - Cron triggers: `reap-timeouts`, `process-next`,
    `process-all`, `publish-scheduled`

    **/api/v1/queue** - Queue intake and inspection

    ### Headers:
    - **Request**: `Authorization: Bearer <service-jwt>` on jobs, queue and config endpoints
    - **Webhook**: `X-Telegram-Bot-Api-Secret-Token` when a webhook secret is configured
    """,
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Request/Response logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    log_data = {
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": int(duration * 1000),
        "client": request.client.host if request.client else "unknown"
    }

    # Only log non-health-check requests
    if not request.url.path.endswith("/health"):
        logger.info(f"Request: {log_data}")

    return response

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=origins != ["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# Include routers
app.include_router(router)

# Root endpoint
@app.get("/", tags=["Root"])
async def root():
    return {
        "service": settings.PROJECT_NAME,
        "version": "1.0.0",
        "status": "running",
        "documentation": "/docs"
    }
