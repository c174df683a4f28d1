"""
FastAPI 应用入口点。
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from src.ra.audit.router import router as audit_router
from src.ra.auth.router import router as auth_router
from src.ra.config import config
from src.ra.csr.router import router as keys_router
from src.ra.deps import get_context
from src.ra.enrollment.router import router as certificates_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx = get_context()
    ctx.challenges.start()
    logger.info("RA 服务已启动，挑战清理线程运行中")
    try:
        yield
    finally:
        try:
            logger.info("应用关闭，正在停止挑战清理线程...")
            ctx.challenges.stop()
            close = getattr(ctx.ca, "close", None)
            if close is not None:
                close()
        except Exception as e:
            logger.error(f"关闭 RA 服务组件时发生错误: {e}")


app = FastAPI(title="Certificate Registration Authority Service", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, prefix="/api/v1")
app.include_router(certificates_router, prefix="/api/v1")
app.include_router(keys_router, prefix="/api/v1")
app.include_router(audit_router, prefix="/api/v1")

logger.info(f"config: {config.model_dump_json(indent=4, exclude={'jwt_secret', 'ca_password'})}")
