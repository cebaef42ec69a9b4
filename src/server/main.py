"""
FastAPI 应用入口点。
"""

from loguru import logger
from contextlib import asynccontextmanager
from fastapi.middleware.cors import CORSMiddleware

from fastapi import FastAPI
from src.server.client.router import router as client_router

from src.server.config import config
from src.server.log import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config)
    from src.server.client.auth import init_secret
    from src.server.client.services import ClientSupervisor

    if config.require_token:
        init_secret()
    supervisor = ClientSupervisor(config)
    app.state.supervisor = supervisor
    try:
        if config.autostart:
            supervisor.launch()
        yield
    finally:
        # 应用关闭事件处理器 - 自动停止节点客户端
        try:
            logger.info("应用关闭，正在停止节点客户端...")
            await supervisor.shutdown()
            logger.info("节点客户端已停止")
        except Exception as e:
            logger.error(f"停止节点客户端时发生错误: {e}")


app = FastAPI(title="Node Client Supervisor", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(client_router, prefix="/v1")

logger.info(f"config: {config.model_dump_json(indent=4)}")
