# main.py
from fastapi_limiter import FastAPILimiter
import routes
from contextlib import asynccontextmanager
from util.enums import Environment, Color, ErrorMessage
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.middleware.cors import CORSMiddleware
from config.settings import settings
from config.cache import close_redis, get_redis, redis_healthy
from fastapi.responses import JSONResponse
from service.container import build_services
from util.errors import AppError
from util.logger import init_logger


async def _real_ip(request: Request) -> str:
    if settings.TRUST_PROXY:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            return fwd.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@asynccontextmanager
async def lifespan(fastApi: FastAPI):
    try:
        init_logger()
        print(f"{Color.GREEN}Initializing ({settings.APP_ENV})...{Color.RESET}")
        redis = await get_redis()
        if settings.RATE_LIMIT_TIMES > 0:
            await FastAPILimiter.init(redis, identifier=_real_ip)
        fastApi.state.services = build_services(redis)
        print(f"{Color.BLUE}Server Started{Color.RESET}")
    except Exception as e:
        print("Failed to start:", e)
        raise

    try:
        yield
    finally:
        # In-flight runners record a retryable error before Redis goes away.
        try:
            await fastApi.state.services.supervisor.shutdown()
        except Exception as e:
            print("Error stopping jobs:", e)
        try:
            await close_redis()
        except Exception as e:
            print("Error closing Redis:", e)

        print(f"{Color.RED}Server Shutdown{Color.RESET}")


app: FastAPI = FastAPI(
    lifespan=lifespan,
    docs_url="/docs" if settings.APP_ENV == Environment.DEV else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.ALLOWED_ORIGIN],
    allow_credentials=True,  # Allow cookies and other credentials
    allow_methods=["GET", "POST", "DELETE"],  # Allowed HTTP Methods
    allow_headers=["Authorization", "Content-Type", "Accept", "Range"],  # Allowed HTTP Headers
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)


@app.get("/healthz")
async def healthz():
    return {"ok": True, "redis": await redis_healthy()}


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    info = ErrorMessage.INVALID_REQUEST.value
    return JSONResponse(
        status_code=info.http_status,
        content={"ok": False, "error": info.code, "message": info.message},
    )


@app.exception_handler(429)
async def ratelimit_handler(request: Request, exc):
    return JSONResponse(
        status_code=429,
        content={
            "ok": False,
            "error": "rate_limited",
            "message": f"Too many requests. Try again in {settings.RATE_LIMIT_SECONDS}s.",
        },
        headers={"Retry-After": str(settings.RATE_LIMIT_SECONDS)},
    )


routes.register_routes(app)

if __name__ == "__main__":
    import uvicorn

    reload = settings.APP_ENV == Environment.DEV
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=reload)
