"""OSTREAM 环境变量配置管理。

环境变量:
    OSTREAM_HOST: 监听地址 (默认 127.0.0.1)
    OSTREAM_PORT: 监听端口 (默认 8080, 0 = 随机端口)

    OSTREAM_BUFFER: 回放缓冲区行数 (默认 1000, 0 = 仅实时输出)

    OSTREAM_DELIVERY_TIMEOUT: 单个订阅者投递超时（秒，默认 2.0）
    OSTREAM_SEND_TIMEOUT: 单条消息发送超时（秒，默认 5.0）
    OSTREAM_CLIENT_QUEUE: 每个客户端待发送队列上限 (默认 1000)
    OSTREAM_MAX_CLIENTS: 最大客户端数 (默认 50)
    OSTREAM_KEEPALIVE: SSE ping / WebSocket 心跳间隔（秒，默认 15）

    OSTREAM_MAX_LINE_BYTES: 单行最大字节数
        - 0/未设置 = 不限制 (默认)
        - 超长行会被拆分并输出一条 system 警告

    OSTREAM_EXIT_ON_COMPLETE: 命令结束后是否退出
        - true/1/yes = 退出
        - false/0/no = 继续提供历史输出 (默认)

    OSTREAM_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    OSTREAM_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 终止正在运行的命令（命令已结束则退出）(默认)
        - exit = 直接退出进程
        - cancel_then_exit = 先终止命令，第二次才退出

    OSTREAM_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "SigintMode", "load_config", "get_config", "reload_config"]


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 终止正在运行的命令，不退出（命令已结束则退出）
    - EXIT: 直接退出进程
    - CANCEL_THEN_EXIT: 先终止命令，第二次 SIGINT 才退出
    """

    CANCEL = "cancel"
    EXIT = "exit"
    CANCEL_THEN_EXIT = "cancel_then_exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式，无效值返回 CANCEL。"""
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


DEFAULT_PORT = 8080
DEFAULT_BUFFER = 1000


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_int(value: str | None, default: int, *, minimum: int = 0) -> int:
    """解析整数环境变量，无效或小于 minimum 时返回默认值。"""
    if value is None or not value.strip():
        return default
    try:
        number = int(value.strip())
    except ValueError:
        return default
    return number if number >= minimum else default


def _parse_float(value: str | None, default: float) -> float:
    """解析正浮点数环境变量。"""
    if value is None or not value.strip():
        return default
    try:
        number = float(value.strip())
    except ValueError:
        return default
    return number if number > 0 else default


def _parse_double_tap_window(value: str | None) -> float:
    """解析双击窗口时间环境变量。"""
    if not value:
        return 1.0
    try:
        window = float(value)
        return max(0.1, min(window, 10.0))  # 限制在 0.1-10 秒范围
    except ValueError:
        return 1.0


@dataclass
class Config:
    """output-streamer 配置。

    Attributes:
        host: 监听地址
        port: 监听端口
        buffer_size: 回放缓冲区行数
        delivery_timeout: 单个订阅者投递超时
        send_timeout: 单条消息发送超时
        client_queue_size: 每个客户端待发送队列上限
        max_clients: 最大客户端数
        keepalive_interval: 心跳间隔
        max_line_bytes: 单行最大字节数（None = 不限制）
        exit_on_complete: 命令结束后是否退出
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    buffer_size: int = DEFAULT_BUFFER
    delivery_timeout: float = 2.0
    send_timeout: float = 5.0
    client_queue_size: int = 1000
    max_clients: int = 50
    keepalive_interval: float = 15.0
    max_line_bytes: int | None = None
    exit_on_complete: bool = False
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = 1.0

    def __repr__(self) -> str:
        return (
            f"Config(host={self.host}, port={self.port}, "
            f"buffer_size={self.buffer_size}, "
            f"delivery_timeout={self.delivery_timeout}, "
            f"send_timeout={self.send_timeout}, "
            f"client_queue_size={self.client_queue_size}, "
            f"max_clients={self.max_clients}, "
            f"max_line_bytes={self.max_line_bytes or 'unlimited'}, "
            f"exit_on_complete={self.exit_on_complete}, "
            f"log_debug={self.log_debug}, "
            f"sigint_mode={self.sigint_mode.value})"
        )


def generate_log_file_path() -> str:
    """生成日志文件路径（系统临时目录下的 output-streamer 子目录）。"""
    log_dir = Path(tempfile.gettempdir()) / "output-streamer"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"ostream_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    env = os.environ
    log_debug = _parse_bool(env.get("OSTREAM_LOG_DEBUG"), default=False)
    max_line_bytes = _parse_int(env.get("OSTREAM_MAX_LINE_BYTES"), 0)

    return Config(
        host=env.get("OSTREAM_HOST", "").strip() or "127.0.0.1",
        port=_parse_int(env.get("OSTREAM_PORT"), DEFAULT_PORT),
        buffer_size=_parse_int(env.get("OSTREAM_BUFFER"), DEFAULT_BUFFER),
        delivery_timeout=_parse_float(env.get("OSTREAM_DELIVERY_TIMEOUT"), 2.0),
        send_timeout=_parse_float(env.get("OSTREAM_SEND_TIMEOUT"), 5.0),
        client_queue_size=_parse_int(env.get("OSTREAM_CLIENT_QUEUE"), 1000, minimum=1),
        max_clients=_parse_int(env.get("OSTREAM_MAX_CLIENTS"), 50, minimum=1),
        keepalive_interval=_parse_float(env.get("OSTREAM_KEEPALIVE"), 15.0),
        max_line_bytes=max_line_bytes or None,
        exit_on_complete=_parse_bool(env.get("OSTREAM_EXIT_ON_COMPLETE"), default=False),
        log_debug=log_debug,
        log_file=generate_log_file_path() if log_debug else None,
        sigint_mode=SigintMode.from_string(env.get("OSTREAM_SIGINT_MODE") or "cancel"),
        sigint_double_tap_window=_parse_double_tap_window(
            env.get("OSTREAM_SIGINT_DOUBLE_TAP_WINDOW")
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
