"""Config 模块测试。

测试 OSTREAM_* 环境变量解析和配置管理。
"""

from __future__ import annotations

import os
from unittest import mock

from output_streamer.config import Config, SigintMode, get_config, load_config, reload_config

OSTREAM_VARS = [
    "OSTREAM_HOST",
    "OSTREAM_PORT",
    "OSTREAM_BUFFER",
    "OSTREAM_DELIVERY_TIMEOUT",
    "OSTREAM_SEND_TIMEOUT",
    "OSTREAM_CLIENT_QUEUE",
    "OSTREAM_MAX_CLIENTS",
    "OSTREAM_KEEPALIVE",
    "OSTREAM_MAX_LINE_BYTES",
    "OSTREAM_EXIT_ON_COMPLETE",
    "OSTREAM_LOG_DEBUG",
    "OSTREAM_SIGINT_MODE",
    "OSTREAM_SIGINT_DOUBLE_TAP_WINDOW",
]


def clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in OSTREAM_VARS}


class TestDefaults:
    """未设置环境变量时的默认值。"""

    def test_defaults(self):
        with mock.patch.dict(os.environ, clean_env(), clear=True):
            config = load_config()
        assert config.host == "127.0.0.1"
        assert config.port == 8080
        assert config.buffer_size == 1000
        assert config.max_line_bytes is None
        assert config.exit_on_complete is False
        assert config.log_debug is False
        assert config.log_file is None
        assert config.sigint_mode == SigintMode.CANCEL
        assert config.sigint_double_tap_window == 1.0


class TestParseValues:
    """环境变量解析。"""

    def test_port_and_buffer(self):
        with mock.patch.dict(os.environ, {"OSTREAM_PORT": "9000", "OSTREAM_BUFFER": "50"}, clear=False):
            config = load_config()
        assert config.port == 9000
        assert config.buffer_size == 50

    def test_zero_buffer_allowed(self):
        """缓冲区为 0 表示仅实时输出。"""
        with mock.patch.dict(os.environ, {"OSTREAM_BUFFER": "0"}, clear=False):
            assert load_config().buffer_size == 0

    def test_invalid_numbers_fall_back(self):
        env = {
            "OSTREAM_PORT": "abc",
            "OSTREAM_BUFFER": "-5",
            "OSTREAM_CLIENT_QUEUE": "0",
            "OSTREAM_SEND_TIMEOUT": "-1",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            config = load_config()
        assert config.port == 8080
        assert config.buffer_size == 1000
        assert config.client_queue_size == 1000
        assert config.send_timeout == 5.0

    def test_max_line_bytes(self):
        with mock.patch.dict(os.environ, {"OSTREAM_MAX_LINE_BYTES": "65536"}, clear=False):
            assert load_config().max_line_bytes == 65536
        with mock.patch.dict(os.environ, {"OSTREAM_MAX_LINE_BYTES": "0"}, clear=False):
            assert load_config().max_line_bytes is None

    def test_bool_values(self):
        for value in ("true", "1", "yes", "ON"):
            with mock.patch.dict(os.environ, {"OSTREAM_EXIT_ON_COMPLETE": value}, clear=False):
                assert load_config().exit_on_complete is True
        for value in ("false", "0", "no", ""):
            with mock.patch.dict(os.environ, {"OSTREAM_EXIT_ON_COMPLETE": value}, clear=False):
                assert load_config().exit_on_complete is False

    def test_log_debug_sets_log_file(self):
        with mock.patch.dict(os.environ, {"OSTREAM_LOG_DEBUG": "true"}, clear=False):
            config = load_config()
        assert config.log_debug is True
        assert config.log_file is not None
        assert "ostream_debug_" in config.log_file

    def test_sigint_settings(self):
        env = {"OSTREAM_SIGINT_MODE": "exit", "OSTREAM_SIGINT_DOUBLE_TAP_WINDOW": "50"}
        with mock.patch.dict(os.environ, env, clear=False):
            config = load_config()
        assert config.sigint_mode == SigintMode.EXIT
        # 限制在 0.1-10 秒
        assert config.sigint_double_tap_window == 10.0


class TestGlobalConfig:
    """全局配置实例。"""

    def test_reload(self):
        with mock.patch.dict(os.environ, {"OSTREAM_PORT": "7001"}, clear=False):
            assert reload_config().port == 7001
            assert get_config().port == 7001
        reload_config()

    def test_repr(self):
        text = repr(Config(max_line_bytes=None))
        assert "max_line_bytes=unlimited" in text
        assert "sigint_mode=cancel" in text
