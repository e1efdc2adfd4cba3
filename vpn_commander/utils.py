import sys
import json
from datetime import datetime
from typing import Any
from vpn_commander.config import (
    ANSI_ESCAPE, BARE_COLOR_CODES, LOG_OUTPUT_MAX_CHARS, config
)

LEVELS = {"debug": 10, "info": 20, "warn": 30, "warning": 30, "error": 40}


def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")


def _enabled(level: str) -> bool:
    threshold = LEVELS.get(config.LOG_LEVEL, LEVELS["info"])
    return LEVELS[level] >= threshold


def log(level: str, message: str, **fields: Any) -> None:
    if not _enabled(level):
        return
    payload = {"ts": iso_now(), "level": level, "msg": message}
    payload.update(fields)
    try:
        line = json.dumps(payload, ensure_ascii=False, default=str)
    except Exception as exc:
        line = json.dumps({"ts": payload["ts"], "level": "error", "msg": f"log encode failed: {exc}"})
    print(line, file=sys.stderr, flush=True)


def log_debug(message: str, **fields: Any) -> None:
    log("debug", message, **fields)


def log_info(message: str, **fields: Any) -> None:
    log("info", message, **fields)


def log_warning(message: str, **fields: Any) -> None:
    log("warn", message, **fields)


def log_error(message: str, **fields: Any) -> None:
    log("error", message, **fields)


def truncate(text: str, max_chars: int = LOG_OUTPUT_MAX_CHARS) -> str:
    if not text or len(text) <= max_chars:
        return text or ""
    return text[:max_chars] + f"... [{len(text) - max_chars} more chars]"


def strip_colors(text: str) -> str:
    if not text:
        return ""
    text = ANSI_ESCAPE.sub("", text)
    for code in BARE_COLOR_CODES:
        text = text.replace(code, "")
    return text

