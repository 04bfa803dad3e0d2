"""
core/config.py — 配置加载

YAML 配置文件，点号路径读取：
    from core.config import cfg
    cfg.get("generation.max_retries", 3)

配置文件路径由环境变量 CONFIG_PATH 指定，默认 ./config.yaml；文件不存在时视为空配置。
"""

import os
import threading
from typing import Any, Dict

import yaml

VERSION = "1.0.0"
API_BASE = "/api/v1"

_MISSING = object()


class Config:
    def __init__(self, config_path: str):
        self.config_path = config_path
        self.config: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.reload()

    def reload(self) -> Dict[str, Any]:
        with self._lock:
            data: Dict[str, Any] = {}
            if self.config_path and os.path.exists(self.config_path):
                with open(self.config_path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
                if isinstance(loaded, dict):
                    data = loaded
            self.config = data
            return self.config

    def get(self, key: str, default: Any = None) -> Any:
        cursor: Any = self.config
        for part in [x for x in str(key or "").split(".") if x]:
            if not isinstance(cursor, dict):
                return default
            cursor = cursor.get(part, _MISSING)
            if cursor is _MISSING:
                return default
        if cursor is None:
            return default
        return cursor


cfg = Config(os.getenv("CONFIG_PATH", "config.yaml"))
