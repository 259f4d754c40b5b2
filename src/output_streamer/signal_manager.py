"""信号管理模块。

终端里的 Ctrl+C 只作用于被监控的命令，而不是整个 streamer：
- SIGINT: 终止正在运行的命令，服务器继续提供历史输出
  （命令已结束时再按一次则退出）
- SIGTERM: 终止命令并优雅退出
- 双击窗口内连续两次 SIGINT: 强制退出（退出码 130）

支持的配置：
- OSTREAM_SIGINT_MODE: cancel | exit | cancel_then_exit
- OSTREAM_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from enum import Enum
from typing import Callable, Optional

from .config import SigintMode, get_config

__all__ = ["ShutdownReason", "SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)

IS_WINDOWS = sys.platform == "win32"


class ShutdownReason(Enum):
    """退出原因。"""

    SIGINT = "sigint"
    SIGTERM = "sigterm"
    FORCED = "forced"
    REQUESTED = "requested"


class SignalManager:
    """把 OS 信号翻译成对命令任务的操作。

    Example:
        ```python
        manager = SignalManager(
            is_command_running=lambda: not command_task.done(),
            cancel_command=command_task.cancel,
        )
        await manager.start()
        try:
            await manager.wait_for_shutdown()
        finally:
            await manager.stop()
        ```
    """

    def __init__(
        self,
        is_command_running: Callable[[], bool],
        cancel_command: Callable[[], None],
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ) -> None:
        """初始化。

        Args:
            is_command_running: 命令是否仍在运行
            cancel_command: 终止命令的回调
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击退出窗口（秒，默认从配置读取）
            on_shutdown: 请求退出时调用一次
        """
        config = get_config()
        self.sigint_mode = config.sigint_mode if sigint_mode is None else sigint_mode
        self.double_tap_window = (
            config.sigint_double_tap_window if double_tap_window is None else double_tap_window
        )
        self._is_command_running = is_command_running
        self._cancel_command = cancel_command
        self._on_shutdown = on_shutdown

        self.shutdown_reason: Optional[ShutdownReason] = None
        self._armed = False  # 下一次 SIGINT 在窗口内即强制退出
        self._previous_sigint = float("-inf")
        self._done: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._saved_handler = None

    @property
    def is_shutdown_requested(self) -> bool:
        return self._armed or self.shutdown_reason is not None

    @property
    def is_force_exit(self) -> bool:
        return self.shutdown_reason is ShutdownReason.FORCED

    async def start(self) -> None:
        """安装信号处理器（需在事件循环中调用）。"""
        if self._loop is not None:
            logger.warning("SignalManager already started")
            return
        self._loop = asyncio.get_running_loop()
        self._done = asyncio.Event()

        if IS_WINDOWS:
            # Windows 没有 loop.add_signal_handler
            loop = self._loop
            self._saved_handler = signal.signal(
                signal.SIGINT,
                lambda signum, frame: loop.call_soon_threadsafe(self._handle_sigint),
            )
        else:
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
        logger.debug(
            f"Signal handlers installed: sigint_mode={self.sigint_mode.value}, "
            f"window={self.double_tap_window}s"
        )

    async def stop(self) -> None:
        """恢复原来的信号处理器。"""
        loop, self._loop = self._loop, None
        if loop is None:
            return
        if IS_WINDOWS:
            if self._saved_handler is not None:
                signal.signal(signal.SIGINT, self._saved_handler)
        else:
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
        logger.debug("Signal handlers restored")

    async def wait_for_shutdown(self) -> None:
        if self._done is not None:
            await self._done.wait()

    def request_graceful_shutdown(self) -> None:
        """程序化退出（例如命令结束且 exit_on_complete）。"""
        logger.info("Shutdown requested")
        self._shutdown(ShutdownReason.REQUESTED)

    # ------------------------------------------------------------------
    # 信号处理
    # ------------------------------------------------------------------

    def _handle_sigint(self) -> None:
        now = time.monotonic()
        within_window = now - self._previous_sigint < self.double_tap_window
        self._previous_sigint = now

        if self.is_shutdown_requested and within_window:
            logger.warning("Second SIGINT within the double-tap window, forcing exit")
            self._shutdown(ShutdownReason.FORCED)
            return

        running = self._is_command_running()
        if self.sigint_mode is SigintMode.EXIT or not running:
            logger.info(
                f"SIGINT (mode={self.sigint_mode.value}, command running={running}), exiting"
            )
            self._shutdown(ShutdownReason.SIGINT)
            return

        self._cancel_command()
        if self.sigint_mode is SigintMode.CANCEL_THEN_EXIT:
            self._armed = True
            logger.info(
                f"SIGINT: command cancelled, press Ctrl+C again within "
                f"{self.double_tap_window}s to exit"
            )
        else:
            logger.info("SIGINT: command cancelled, still serving output")

    def _handle_sigterm(self) -> None:
        logger.info("SIGTERM received, shutting down")
        self._shutdown(ShutdownReason.SIGTERM)

    def _shutdown(self, reason: ShutdownReason) -> None:
        if self._is_command_running():
            self._cancel_command()
            logger.debug("Running command cancelled for shutdown")

        first = self.shutdown_reason is None
        if first or reason is ShutdownReason.FORCED:
            self.shutdown_reason = reason
        if first and self._on_shutdown is not None:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Shutdown callback failed: {e}")

        if self._done is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._done.set)
