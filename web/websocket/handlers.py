"""
WebSocket 处理器

处理WebSocket连接和消息传递：
- reader_subscribe: 订阅阅读会话，会话状态变化（包括控件自动隐藏）时推送 reader_state
- reader_input: 通过 WebSocket 发送输入事件，减少翻页时的 HTTP 往返
"""

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, Dict, List

from fastapi import WebSocket, WebSocketDisconnect

from core.reader_session import ReaderSession
from web.reader_manager import cleanup_session, get_dispatcher, get_reader_session, session_snapshot
from utils import manga_logger as log


class ConnectionManager:
    """WebSocket连接管理器"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self.connection_info: Dict[WebSocket, Dict[str, Any]] = {}

    async def connect(self, websocket: WebSocket, client_id: str = None):
        """接受WebSocket连接"""
        await websocket.accept()
        self.active_connections.append(websocket)

        self.connection_info[websocket] = {
            "client_id": client_id or f"client_{len(self.active_connections)}",
            "connected_at": datetime.now(),
            # session_id -> (会话, 监听函数)
            "subscriptions": {},
        }

        log.info(f"WebSocket客户端连接: {self.connection_info[websocket]['client_id']}")

        await self.send_personal_message({
            "type": "connection",
            "status": "connected",
            "client_id": self.connection_info[websocket]["client_id"],
            "message": "WebSocket连接成功"
        }, websocket)

    def disconnect(self, websocket: WebSocket):
        """断开WebSocket连接，并移除其在阅读会话上注册的监听"""
        if websocket in self.active_connections:
            client_info = self.connection_info.pop(websocket, {})
            for session, listener in client_info.get("subscriptions", {}).values():
                session.remove_listener(listener)

            self.active_connections.remove(websocket)
            log.info(f"WebSocket客户端断开: {client_info.get('client_id', 'unknown')}")

    async def send_personal_message(self, message: Dict[str, Any], websocket: WebSocket):
        """发送消息给特定客户端"""
        try:
            await websocket.send_text(json.dumps(message, ensure_ascii=False))
        except (WebSocketDisconnect, RuntimeError) as e:
            log.error(f"发送WebSocket消息失败: {e}")
            self.disconnect(websocket)

    def _state_listener(self, websocket: WebSocket) -> Callable[[ReaderSession], None]:
        def listener(session: ReaderSession) -> None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            loop.create_task(self.send_personal_message({
                "type": "reader_state",
                "data": session_snapshot(session),
            }, websocket))
        return listener

    def subscribe_session(self, websocket: WebSocket, session: ReaderSession):
        """订阅阅读会话状态"""
        info = self.connection_info.get(websocket)
        if info is None:
            return
        self.unsubscribe_session(websocket, session.session_id)
        listener = self._state_listener(websocket)
        session.add_listener(listener)
        info["subscriptions"][session.session_id] = (session, listener)
        log.info(f"客户端 {info['client_id']} 订阅了会话 {session.session_id}")

    def unsubscribe_session(self, websocket: WebSocket, session_id: str):
        info = self.connection_info.get(websocket)
        if info is None:
            return
        entry = info["subscriptions"].pop(session_id, None)
        if entry is not None:
            session, listener = entry
            session.remove_listener(listener)


# 全局连接管理器实例
manager = ConnectionManager()


async def websocket_endpoint(websocket: WebSocket):
    """WebSocket端点处理函数"""
    await manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send_personal_message({
                    "type": "error",
                    "message": "无效的JSON格式"
                }, websocket)
                continue
            if not isinstance(message, dict):
                await manager.send_personal_message({
                    "type": "error",
                    "message": "消息必须是JSON对象"
                }, websocket)
                continue
            await handle_message(websocket, message)
    except WebSocketDisconnect:
        manager.disconnect(websocket)


async def _send_error(websocket: WebSocket, text: str):
    await manager.send_personal_message({"type": "error", "message": text}, websocket)


async def handle_message(websocket: WebSocket, message: Dict[str, Any]):
    """处理接收到的WebSocket消息"""
    message_type = message.get("type")

    if message_type == "ping":
        await manager.send_personal_message({
            "type": "pong",
            "timestamp": datetime.now().isoformat()
        }, websocket)

    elif message_type == "reader_subscribe":
        session_id = message.get("sessionId")
        session = get_reader_session(session_id) if session_id else None
        if session is None:
            await _send_error(websocket, f"会话不存在: {session_id}")
            return
        manager.subscribe_session(websocket, session)
        await manager.send_personal_message({
            "type": "reader_state",
            "data": session_snapshot(session),
        }, websocket)

    elif message_type == "reader_unsubscribe":
        manager.unsubscribe_session(websocket, message.get("sessionId"))

    elif message_type == "reader_input":
        session_id = message.get("sessionId")
        dispatcher = get_dispatcher(session_id) if session_id else None
        if dispatcher is None:
            await _send_error(websocket, f"会话不存在: {session_id}")
            return
        try:
            result = dispatcher.dispatch(message.get("event") or {})
        except (ValueError, TypeError) as e:
            await _send_error(websocket, str(e))
            return
        if result.navigate_to is not None:
            manager.unsubscribe_session(websocket, session_id)
            cleanup_session(session_id)
        await manager.send_personal_message({
            "type": "reader_input_result",
            "sessionId": session_id,
            "data": result.to_dict(),
        }, websocket)

    elif message_type == "get_status":
        await manager.send_personal_message({
            "type": "status",
            "data": {
                "connected_clients": len(manager.active_connections),
                "server_time": datetime.now().isoformat(),
                "status": "running"
            }
        }, websocket)

    else:
        await _send_error(websocket, f"未知的消息类型: {message_type}")


__all__ = [
    "websocket_endpoint",
    "manager"
]
