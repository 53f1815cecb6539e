#!/usr/bin/env python3
"""
透明代理管理器日志配置

通过环境变量控制日志级别：
- LOG_LEVEL: DEBUG, INFO, WARNING, ERROR, CRITICAL（支持 WARN / FATAL 别名）
- DEBUG: 未设置 LOG_LEVEL 时，"1" / "true" / "yes" / "on" 启用 DEBUG

sing-box 自身的输出直接继承管理器的 stdout/stderr，不经过这里。

使用方式：
    from log_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger("tproxy-manager")
"""

import logging
import os
import sys
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FORMAT_DETAILED = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
    "FATAL": logging.CRITICAL,
}

# 防止重复配置
_logging_configured = False


def get_log_level() -> int:
    """从环境变量获取日志级别

    优先级：LOG_LEVEL > DEBUG 标志 > 默认 INFO。
    无法识别的取值回退到 INFO。

    Returns:
        logging 模块的日志级别常量
    """
    level_str = os.environ.get("LOG_LEVEL", "").upper().strip()

    if not level_str:
        debug_flag = os.environ.get("DEBUG", "").lower().strip()
        level_str = "DEBUG" if debug_flag in ("1", "true", "yes", "on") else DEFAULT_LOG_LEVEL

    return _LEVEL_MAP.get(level_str, logging.INFO)


def setup_logging(
    name: Optional[str] = None,
    level: Optional[int] = None,
    detailed: bool = False,
    force: bool = False
) -> logging.Logger:
    """配置全局日志（输出到 stderr）

    Args:
        name: Logger 名称，None 表示 root logger
        level: 日志级别，None 表示从环境变量获取
        detailed: 是否使用详细格式（包含文件名和行号）
        force: 已配置过时是否强制重新配置（例如 CLI 的 --verbose）

    Returns:
        配置好的 Logger 实例
    """
    global _logging_configured

    if _logging_configured and not force:
        return logging.getLogger(name)

    if level is None:
        level = get_log_level()

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT_DETAILED if detailed else LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
        force=force or not _logging_configured
    )

    # asyncio 在 DEBUG 下会输出大量慢回调日志
    logging.getLogger("asyncio").setLevel(max(level, logging.WARNING))

    _logging_configured = True

    logger = logging.getLogger(name)
    logger.debug(f"Logging configured: level={logging.getLevelName(level)}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """获取命名 logger，必要时自动调用 setup_logging()"""
    if not _logging_configured:
        setup_logging()
    return logging.getLogger(name)
