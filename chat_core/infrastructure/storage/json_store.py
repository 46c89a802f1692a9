import json
import os
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import BusinessError
from chat_core.infrastructure.logging.logger import logger

CONFIG_STORAGE_KEY = "supportai_config"


class JsonConfigStore:
    """把用户保存的配置作为单个 JSON blob 写在 storage_root 下。

    读取失败（文件不存在、JSON 损坏、不是对象）一律视为"没有保存过配置"。
    """

    def __init__(self, root: str | Path | None = None, key: str = CONFIG_STORAGE_KEY):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._key = key

    @property
    def path(self) -> Path:
        return self._root / f"{self._key}.json"

    def load(self) -> Optional[Dict[str, Any]]:
        path = self.path
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable saved config", extra={"extra": {"path": str(path), "error": str(e)}})
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring saved config that is not an object", extra={"extra": {"path": str(path)}})
            return None
        return data

    def save(self, data: Dict[str, Any]) -> None:
        tmp_path = self._root / f"{self._key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(data, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))
