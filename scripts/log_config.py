#!/usr/bin/env python3
"""
统一日志配置模块

通过环境变量控制日志：
- LOG_LEVEL: 日志级别 (DEBUG, INFO, WARNING, ERROR, CRITICAL)
- DEBUG: 未设置 LOG_LEVEL 时，"1"/"true" 表示 DEBUG
- LOG_DETAILED: "1" 时输出文件名和行号

RouterOS 登录字 (=password=..., =response=...) 在输出前会被屏蔽。

使用方式：
    from log_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
"""

import logging
import os
import re
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 第三方库日志（降噪）
NOISY_LOGGERS = ["asyncio", "urllib3", "requests", "httpx", "uvicorn.access"]

_SECRET_WORD = re.compile(r"(=(?:password|response)=)[^\s'\",\]]*")

_logging_configured = False


class RedactSecretsFilter(logging.Filter):
    """屏蔽日志中的 RouterOS 凭据字"""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _SECRET_WORD.sub(r"\1***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def get_log_level() -> int:
    """从环境变量获取日志级别"""
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL

    level = logging.getLevelName("WARNING" if level_str == "WARN" else level_str)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    level: Optional[int] = None,
    detailed: Optional[bool] = None,
    force: bool = False,
) -> logging.Logger:
    """配置 root logger（只配置一次，force=True 时重新配置）"""
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger()

    if level is None:
        level = get_log_level()
    if detailed is None:
        detailed = os.environ.get("LOG_DETAILED", "") in ("1", "true")

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=True,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RedactSecretsFilter())

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger()
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """获取命名 logger，必要时先配置全局日志"""
    if not _logging_configured:
        setup_logging()
    return logging.getLogger(name)
