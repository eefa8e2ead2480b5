import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from chat_core.config.settings import settings

# 可能包含用户提问或模型输出的字段，开启脱敏时只保留长度
_CONTENT_FIELDS = ("question", "content", "delta", "thinking", "error")


class JsonFormatter(logging.Formatter):
    """每条记录输出为一行 JSON，extra={"extra": {...}} 中的字段平铺到顶层。"""

    def __init__(self, redact_content: bool = False):
        super().__init__()
        self.redact_content = redact_content

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        if self.redact_content:
            for key in _CONTENT_FIELDS:
                value = payload.get(key)
                if isinstance(value, str):
                    payload[key] = f"<redacted {len(value)} chars>"
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logger(cfg=settings) -> logging.Logger:
    logger = logging.getLogger("chat_core")
    level = logging.getLevelName(cfg.log_level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / cfg.log_file, encoding="utf-8")
    fh.setFormatter(JsonFormatter(redact_content=cfg.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()
