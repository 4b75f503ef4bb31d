"""
Web API 模块

包含所有的API路由，提供RESTful接口来访问核心业务逻辑。

模块说明:
- manga.py: 漫画搜索、详情、章节列表、标签
- chapter.py: 章节详情与页面清单
- bookmarks.py: 书签管理
- cache.py: 离线缓存管理
- reader.py: 阅读会话
- image_proxy.py: 图片代理
"""
