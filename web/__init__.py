"""
漫画阅读器 - Web 服务模块

模块结构:
- app.py: FastAPI主应用
- auth.py: Bearer token 鉴权
- reader_manager.py: 阅读会话管理
- api/: API路由模块
- websocket/: WebSocket处理
"""

__version__ = "1.0.0"
