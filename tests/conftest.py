"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from output_streamer.streaming import TaggedLine  # noqa: E402

# 测试用假命令
FIXTURES_DIR = Path(__file__).parent / "fixtures"
NOISY_CLI = FIXTURES_DIR / "noisy_cli.py"


class RecordingSubscriber:
    """记录收到的行，可选延迟或抛出异常。"""

    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.lines: list[TaggedLine] = []
        self.failed_with: BaseException | None = None

    async def deliver(self, line: TaggedLine) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.lines.append(line)

    def fail(self, error: BaseException) -> None:
        self.failed_with = error

    @property
    def sequences(self) -> list[int]:
        return [line.sequence for line in self.lines]


@pytest.fixture
def project_root() -> Path:
    """项目根目录。"""
    return PROJECT_ROOT


@pytest.fixture
def noisy_cli() -> list[str]:
    """运行假命令的 argv 前缀。"""
    return [sys.executable, str(NOISY_CLI)]


@pytest.fixture
def make_subscriber():
    """RecordingSubscriber 工厂。"""
    return RecordingSubscriber
