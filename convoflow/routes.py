import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api.action_routes import router as action_router
from .api.system_routes import router as system_router
from .api.turn_routes import router as turn_router
from .db import init_db
from .logging_config import logger
from .settings import settings


async def handle_unexpected_error(request: Request, exc: Exception):
    """
    全局异常处理器，统一返回结构化错误响应并打印日志。
    """

    error_id = uuid.uuid4().hex
    logger.exception(
        "Unhandled error %s %s (error_id=%s)",
        request.method,
        request.url.path,
        error_id,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "服务器内部错误，请稍后再试",
            "code": 500,
            "details": {"error_id": error_id},
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - startup: 按需创建会话数据表
    - shutdown: 无额外清理
    """
    if settings.auto_create_tables:
        init_db()
    yield


def create_app() -> FastAPI:
    app = FastAPI(
        title="convoflow",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(system_router)
    app.include_router(turn_router)
    app.include_router(action_router)
    return app
