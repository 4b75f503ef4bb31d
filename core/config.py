# core/config.py
"""
漫画阅读器核心配置文件

定义应用程序的所有配置项，包括:
1. 上游目录 API 相关设置（地址、缓存时长、超时）
2. 服务端设置（请求上限、运行环境、鉴权）
3. 阅读器设置（图片质量、预载页数、控件自动隐藏）
4. 本地存储路径

配置使用简洁的JSON配置系统实现，支持:
- 类型安全的配置项定义
- 自动保存和加载
- 配置项验证
- 分类存储
"""

import json
import os
from enum import Enum
from typing import Any, Dict, List, Union
from pathlib import Path


class ImageQuality(Enum):
    """
    章节图片质量

    取值:
    - DATA: 原图
    - DATA_SAVER: 压缩图（省流量）
    """

    DATA = "data"
    DATA_SAVER = "dataSaver"


class Environment(Enum):
    """运行环境"""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigItem:
    """
    简洁的配置项类

    支持类型验证、默认值和自动保存
    """

    def __init__(self, group: str, key: str, default_value: Any, validator=None):
        self.group = group
        self.key = key
        self.default_value = default_value
        self.validator = validator
        self._value = default_value

    @property
    def value(self):
        return self._value

    @value.setter
    def value(self, new_value):
        if self.validator and not self.validator.validate(new_value):
            raise ValueError(f"Invalid value for {self.group}.{self.key}: {new_value}")
        self._value = new_value


class OptionsConfigItem(ConfigItem):
    """选项配置项，继承自ConfigItem"""
    pass


class RangeConfigItem(ConfigItem):
    """范围配置项，继承自ConfigItem"""
    pass


# 验证器类
class OptionsValidator:
    """选项验证器"""

    def __init__(self, options: List[Any]):
        self.options = options

    def validate(self, value: Any) -> bool:
        return value in self.options


class RangeValidator:
    """范围验证器"""

    def __init__(self, min_value: Union[int, float], max_value: Union[int, float]):
        self.min_value = min_value
        self.max_value = max_value

    def validate(self, value: Union[int, float]) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return self.min_value <= value <= self.max_value


class TypeValidator:
    """类型验证器"""

    def __init__(self, expected_type: type):
        self.expected_type = expected_type

    def validate(self, value: Any) -> bool:
        return isinstance(value, self.expected_type)


class Config:
    """
    用户自定义配置项类

    提供以下功能:
    - 分组配置项管理
    - 自动保存/加载配置
    - 配置项值验证
    - 分类存储到app/config目录（可通过 MANGA_READER_CONFIG_DIR 覆盖）
    """

    def __init__(self, config_dir: Union[str, Path, None] = None):
        self.config_dir = Path(config_dir or os.environ.get("MANGA_READER_CONFIG_DIR", "app/config"))
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"

        self._init_config_items()
        self._collect_config_items()

    def _init_config_items(self):
        """初始化所有配置项"""
        # ==================== 上游目录 API ====================
        self.api_base_url = ConfigItem("Api", "BaseUrl", "https://api.mangadex.org", validator=TypeValidator(str))
        self.api_cache_ttl = RangeConfigItem("Api", "CacheTTL", 300, validator=RangeValidator(10, 86400))
        self.api_tags_cache_ttl = RangeConfigItem("Api", "TagsCacheTTL", 3600, validator=RangeValidator(10, 86400))
        self.api_request_timeout = RangeConfigItem("Api", "RequestTimeout", 10, validator=RangeValidator(1, 120))
        self.api_cache_max_entries = RangeConfigItem("Api", "CacheMaxEntries", 1000, validator=RangeValidator(10, 100000))

        # ==================== 服务端 ====================
        self.rate_limit = ConfigItem("Server", "RateLimit", "60/minute", validator=TypeValidator(str))
        self.environment = OptionsConfigItem(
            "Server",
            "Environment",
            Environment.DEVELOPMENT.value,
            validator=OptionsValidator([e.value for e in Environment]),
        )

        # ==================== 鉴权 ====================
        self.auth_enabled = ConfigItem("Auth", "Enabled", True, validator=TypeValidator(bool))
        # token -> 用户ID
        self.auth_tokens = ConfigItem("Auth", "Tokens", {}, validator=TypeValidator(dict))

        # ==================== 阅读器 ====================
        self.image_quality = OptionsConfigItem(
            "Reader",
            "ImageQuality",
            ImageQuality.DATA.value,
            validator=OptionsValidator([e.value for e in ImageQuality]),
        )
        self.prefetch_count = RangeConfigItem("Reader", "PrefetchCount", 3, validator=RangeValidator(0, 10))
        self.controls_hide_delay = RangeConfigItem("Reader", "ControlsHideDelay", 3.0, validator=RangeValidator(0.5, 60))
        self.reader_backend_url = ConfigItem("Reader", "BackendUrl", "", validator=TypeValidator(str))

        # ==================== 本地存储 ====================
        self.database_path = ConfigItem("Storage", "DatabasePath", str(self.config_dir / "offline_cache.db"))
        self.bookmark_database_path = ConfigItem("Storage", "BookmarkDatabasePath", str(self.config_dir / "bookmarks.db"))

        # ==================== 日志设置 ====================
        self.log_level = OptionsConfigItem(
            "System",
            "LogLevel",
            "ERROR",
            validator=OptionsValidator(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
        )

    def _collect_config_items(self):
        """收集所有配置项"""
        self._config_items: Dict[str, ConfigItem] = {}
        for attr_name in dir(self):
            attr = getattr(self, attr_name)
            if isinstance(attr, ConfigItem):
                self._config_items[f"{attr.group}.{attr.key}"] = attr

    def load(self):
        """从文件加载配置"""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    data = json.load(f)

                # 按分类加载配置
                for key, item in self._config_items.items():
                    group_data = data.get(item.group, {})
                    if item.key in group_data:
                        try:
                            item.value = group_data[item.key]
                        except ValueError as e:
                            print(f"配置项 {key} 值无效，使用默认值: {e}")

        except (OSError, json.JSONDecodeError) as e:
            print(f"加载配置文件失败: {e}")

    def save(self):
        """保存配置到文件，按分类组织"""
        try:
            data = {}
            for key, item in self._config_items.items():
                if item.group not in data:
                    data[item.group] = {}

                value = item.value
                # 处理枚举类型
                if isinstance(value, Enum):
                    value = value.value
                data[item.group][item.key] = value

            with open(self.config_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)

        except OSError as e:
            print(f"保存配置文件失败: {e}")

    def get(self, group: str, key: str, default=None):
        """获取配置项值"""
        config_key = f"{group}.{key}"
        if config_key in self._config_items:
            return self._config_items[config_key].value
        return default

    def set(self, group: str, key: str, value):
        """设置配置项值"""
        config_key = f"{group}.{key}"
        if config_key in self._config_items:
            self._config_items[config_key].value = value
            self.save()  # 自动保存

    def is_production(self) -> bool:
        return self.environment.value == Environment.PRODUCTION.value


# 创建全局 config 对象
config = Config()
config.load()  # 加载用户已保存的配置
