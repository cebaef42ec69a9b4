"""
文件功能：
    节点客户端监管的 FastAPI 路由：状态查询、命令下发、RPC 代理与 WebSocket 事件通道。

公开接口：
    - GET /client/status -> StatusPayload
    - GET /client/rpc -> RpcHealth
    - POST /client/commands -> {"ok": bool}
    - POST /client/call -> RpcResult
    - WS /client/ws: 入站 {cmd, data} 命令，出站 ClientEvent

内部方法：
    - get_supervisor(request) -> ClientSupervisor: 从 app.state 取控制器
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from loguru import logger
from pydantic import ValidationError

from .auth import TOKEN_HEADER, TOKEN_QUERY, require_token, verify_token
from .schemas import CallClientRequest, CommandRequest, RpcHealth, RpcResult, StatusPayload
from .services import ClientSupervisor


router = APIRouter(prefix="/client", tags=["Node Client"])


def get_supervisor(request: Request) -> ClientSupervisor:
    supervisor = getattr(request.app.state, "supervisor", None)
    if supervisor is None:
        raise HTTPException(status_code=503, detail="supervisor not ready")
    return supervisor


@router.get("/status", response_model=StatusPayload)
async def get_status(supervisor: ClientSupervisor = Depends(get_supervisor)) -> StatusPayload:
    """获取当前监管状态。"""
    return supervisor.status_payload()


@router.get("/rpc", response_model=RpcHealth)
async def get_rpc_health(supervisor: ClientSupervisor = Depends(get_supervisor)) -> RpcHealth:
    """获取 RPC 就绪状态。"""
    return supervisor.rpc_health


@router.post("/commands", dependencies=[Depends(require_token)])
async def post_command(body: CommandRequest, supervisor: ClientSupervisor = Depends(get_supervisor)):
    """下发命令；结果通过事件通道推送。"""
    try:
        supervisor.handle_command(body.cmd, body.data)
    except (ValueError, AttributeError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True}


@router.post("/call", response_model=RpcResult, dependencies=[Depends(require_token)])
async def post_call(body: CallClientRequest, supervisor: ClientSupervisor = Depends(get_supervisor)) -> RpcResult:
    """同步代理一次 RPC 调用。"""
    return await supervisor.call_client(body.method, body.params)


@router.websocket("/ws")
async def ws_events(websocket: WebSocket):
    await websocket.accept()
    token = websocket.query_params.get(TOKEN_QUERY) or websocket.headers.get(TOKEN_HEADER)
    if not verify_token(token):
        await websocket.close(code=4401)
        return
    supervisor: ClientSupervisor | None = getattr(websocket.app.state, "supervisor", None)
    if supervisor is None:
        await websocket.close(code=1013)
        return

    queue = supervisor.hub.subscribe()

    async def forward_commands():
        while True:
            try:
                raw = await websocket.receive_json()
            except WebSocketDisconnect:
                break
            except ValueError as e:
                logger.warning(f"无法解析的命令消息：{e}")
                continue
            try:
                cmd = CommandRequest.model_validate(raw)
                supervisor.handle_command(cmd.cmd, cmd.data)
            except (ValidationError, ValueError, AttributeError) as e:
                logger.warning(f"无效的命令：{raw}，错误：{e}")

    async def pump_events():
        while True:
            event = await queue.get()
            await websocket.send_json(event.model_dump(mode="json"))

    receiver = asyncio.create_task(forward_commands())
    sender = asyncio.create_task(pump_events())
    try:
        # 连接后立即推送当前状态
        supervisor.send_status()
        supervisor.send_rpc_status()
        await asyncio.wait({receiver, sender}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        receiver.cancel()
        sender.cancel()
        supervisor.hub.unsubscribe(queue)
