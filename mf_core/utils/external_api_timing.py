"""
外部 API 计时

承运商、支付网关、打款接口的每次调用都会记录一行耗时。
配置了 timing_log_dir 时写入按大小滚动的 external_api_timing.log，否则只输出到结构化日志
"""
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from mf_core.config import get_settings
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

_timing_file_logger: Optional[logging.Logger] = None
_timing_file_dir: Optional[str] = None


def _file_logger(log_dir: str) -> logging.Logger:
    """按目录延迟创建文件日志器；目录变化时重建 handler"""
    global _timing_file_logger, _timing_file_dir
    if _timing_file_logger is not None and _timing_file_dir == log_dir:
        return _timing_file_logger

    file_logger = logging.getLogger("mf.external_api_timing")
    file_logger.setLevel(logging.INFO)
    file_logger.propagate = False
    for handler in list(file_logger.handlers):
        file_logger.removeHandler(handler)
        handler.close()

    os.makedirs(log_dir, exist_ok=True)
    handler = RotatingFileHandler(
        os.path.join(log_dir, "external_api_timing.log"),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    file_logger.addHandler(handler)

    _timing_file_logger = file_logger
    _timing_file_dir = log_dir
    return file_logger


def log_external_api_timing(
    service: str,
    method: str,
    endpoint: str,
    elapsed_ms: float,
    outcome: Optional[str] = None
) -> None:
    """
    记录一次外部调用耗时

    Args:
        service: CARRIER / PAYMENT / PAYOUT
        method: HTTP 方法
        endpoint: 相对路径
        elapsed_ms: 耗时（毫秒）
        outcome: status=200 或 ERROR=ConnectError
    """
    log_dir = get_settings().timing_log_dir
    if not log_dir:
        logger.debug("External API timing", service=service, method=method, endpoint=endpoint,
                     elapsed_ms=round(elapsed_ms, 1), outcome=outcome)
        return

    line = f"{service} | {method} {endpoint} | {elapsed_ms:.1f}ms"
    if outcome:
        line += f" | {outcome}"
    _file_logger(log_dir).info(line)
