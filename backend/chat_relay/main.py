"""FastAPI应用主文件.

Review note:
- 所有错误统一返回 `{"error": "..."}`，状态码沿用 HTTPException。
- 启动时若已配置持久化则建表；建表失败不阻止启动。
"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager
import logging

from chat_relay.config import settings
from chat_relay.database import close_db, init_db

logger = logging.getLogger("uvicorn.error")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    logger.info("启动 %s ...", settings.APP_NAME)
    logger.info("gateway=%s model=%s timeout_ms=%s", settings.GATEWAY_BASE_URL, settings.CHAT_MODEL, settings.GATEWAY_TIMEOUT_MS)

    await init_db()

    yield

    await close_db()
    logger.info("关闭 %s ...", settings.APP_NAME)


# 创建FastAPI应用
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="模板驱动的聊天中转服务",
    lifespan=lifespan,
)

# 配置CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(status_code=400, content={"error": message})


@app.get("/health")
async def health_check():
    """健康检查"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
    }


# 导入并注册路由
from chat_relay.api.v1 import chat, history, sessions
app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(sessions.router, prefix="/api", tags=["sessions"])
app.include_router(history.router, prefix="/api", tags=["chat-history"])


def run() -> None:
    import uvicorn
    uvicorn.run(
        "chat_relay.main:app",
        host="0.0.0.0",
        port=settings.PORT,
    )


if __name__ == "__main__":
    run()
