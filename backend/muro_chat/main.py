"""FastAPI 主应用"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import chat, conversations, health
from .config import config
from .db.database import ChatStore
from .errors import ChatError
from .llm import GenerationClient
from .pipeline import MessagePipeline
from .utils.structured_logger import get_logger, setup_structured_logging

logger = get_logger(__name__)


def create_app(
    store: Optional[ChatStore] = None,
    generation_client: Optional[GenerationClient] = None,
    configure_logging: bool = True,
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        store: 存储实现（默认使用 config.DATABASE_PATH 的 SQLite）
        generation_client: 生成客户端（默认使用 OpenAI）
        configure_logging: 是否在启动时配置结构化日志
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """管理应用生命周期：启动时初始化日志、数据库和 MessagePipeline"""
        if configure_logging:
            setup_structured_logging(
                log_level=config.LOG_LEVEL,
                log_dir=config.LOG_DIR,
                enable_json=config.LOG_JSON,
            )

        app.state.store = store or ChatStore(config.DATABASE_PATH)
        await app.state.store.init_db()

        app.state.pipeline = MessagePipeline(
            app.state.store,
            generation_client or GenerationClient(),
        )
        logger.info("应用已启动", model=config.OPENAI_MODEL, version=__version__)

        yield  # 应用运行期间

        logger.info("应用已关闭")

    app = FastAPI(
        title="Muro Chat API",
        description="对话管理与 AI 回复流式推送 API",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册路由
    app.include_router(health.router, prefix="/api", tags=["健康检查"])
    app.include_router(conversations.router, prefix="/api", tags=["对话"])
    app.include_router(chat.router, prefix="/api", tags=["聊天"])

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        """业务异常 → {"error": message}"""
        logger.info("请求失败", code=exc.code, status=exc.http_status, path=request.url.path)
        return JSONResponse(status_code=exc.http_status, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """请求体格式错误统一按 400 返回"""
        logger.info("请求体校验失败", path=request.url.path, errors=str(exc.errors()))
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """未处理异常：不向客户端暴露内部细节"""
        logger.exception("未处理的异常", path=request.url.path)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    @app.get("/")
    async def root():
        """根路径"""
        return {
            "message": "Muro Chat API",
            "docs": "/docs",
            "health": "/api/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
