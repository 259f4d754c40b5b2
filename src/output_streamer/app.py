"""output-streamer 应用入口。

包含命令行解析、服务生命周期管理和主入口点。

用法:
    output-streamer --cmd "make test"
    output-streamer --port 9000 --buffer 5000 -- ./long-running-job.sh --verbose
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import sys
from collections.abc import Sequence

from . import __version__
from .config import Config, generate_log_file_path, get_config
from .runtime import ProcessRunner, ProcessSpec
from .signal_manager import SignalManager
from .streaming import BroadcastEngine, ProcessOutcome
from .web import ServerConfig, ViewerServer

__all__ = ["build_parser", "run", "main"]

logger = logging.getLogger(__name__)

EXIT_FORCED = 130  # 128 + SIGINT(2)


def build_parser() -> argparse.ArgumentParser:
    """构建命令行解析器。环境变量提供默认值，命令行参数优先。"""
    parser = argparse.ArgumentParser(
        prog="output-streamer",
        description="Run a command and stream its stdout/stderr live to browsers.",
    )
    parser.add_argument("--cmd", default="", help="Command to execute (shell-style string)")
    parser.add_argument("--host", default=None, help="HTTP listen address")
    parser.add_argument("--port", type=int, default=None, help="HTTP listen port (0 = random)")
    parser.add_argument("--buffer", type=int, default=None, help="Number of lines to buffer for replay")
    parser.add_argument(
        "--max-line-bytes",
        type=int,
        default=None,
        help="Split lines longer than this many bytes (0 = unlimited)",
    )
    parser.add_argument(
        "--exit-on-complete",
        action="store_true",
        default=None,
        help="Exit when the command finishes instead of serving the transcript",
    )
    parser.add_argument("--log-debug", action="store_true", default=None, help="Debug log to a temp file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("argv", nargs=argparse.REMAINDER, help="Command and arguments after --")
    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """把命令行参数覆盖到配置上。"""
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.buffer is not None:
        if args.buffer < 0:
            raise ValueError(f"--buffer must be >= 0, got {args.buffer}")
        config.buffer_size = args.buffer
    if args.max_line_bytes is not None:
        config.max_line_bytes = args.max_line_bytes or None
    if args.exit_on_complete:
        config.exit_on_complete = True
    if args.log_debug:
        config.log_debug = True
    return config


def spec_from_args(args: argparse.Namespace) -> ProcessSpec | None:
    """从 --cmd 或 ``--`` 之后的参数构造 ProcessSpec，未提供命令时返回 None。"""
    argv = list(args.argv)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if argv:
        return ProcessSpec(argv=argv)
    if args.cmd.strip():
        return ProcessSpec.from_command(args.cmd)
    return None


async def run(config: Config, spec: ProcessSpec) -> int:
    """运行命令并提供浏览器查看服务。

    使用并发任务架构：
    - command_task: 运行命令，输出写入 BroadcastEngine
    - ViewerServer: aiohttp 服务器，向浏览器推送输出
    - SignalManager: SIGINT 终止命令，SIGTERM / 第二次 SIGINT 退出

    Returns:
        进程退出码（命令成功为 0，失败为 1，强制退出为 130）
    """
    logger.info(f"Starting output-streamer: {config}")

    engine = BroadcastEngine(
        config.buffer_size,
        delivery_timeout=config.delivery_timeout,
        client_queue_size=config.client_queue_size,
    )
    server = ViewerServer(
        engine,
        ServerConfig(
            host=config.host,
            port=config.port,
            max_clients=config.max_clients,
            send_timeout=config.send_timeout,
            keepalive_interval=config.keepalive_interval,
            command=spec.command_line,
        ),
    )
    runner = ProcessRunner()
    command_task: asyncio.Task[ProcessOutcome] | None = None

    def is_command_running() -> bool:
        return command_task is not None and not command_task.done()

    def cancel_command() -> None:
        if command_task is not None:
            command_task.cancel()

    signal_manager = SignalManager(
        is_command_running=is_command_running,
        cancel_command=cancel_command,
    )

    def on_command_done(task: asyncio.Task[ProcessOutcome]) -> None:
        if task.cancelled():
            logger.info("Command cancelled")
        elif task.exception() is not None:
            logger.error(f"Command execution error: {task.exception()}")
        if config.exit_on_complete:
            signal_manager.request_graceful_shutdown()
        else:
            logger.info(f"Command finished, still serving output at {server.url}")

    async with engine:
        try:
            await signal_manager.start()
            await server.start()
            logger.info(f"Open {server.url} in your browser")

            command_task = asyncio.create_task(
                runner.run(
                    spec,
                    engine,
                    framer_options={"max_line_bytes": config.max_line_bytes},
                ),
                name="command",
            )
            command_task.add_done_callback(on_command_done)

            await signal_manager.wait_for_shutdown()
            logger.info("Shutdown signal received")

        finally:
            if command_task is not None and not command_task.done():
                command_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await command_task
            await signal_manager.stop()
            await server.stop()
            logger.info("run: cleanup completed")

    if signal_manager.is_force_exit:
        logger.warning(f"Force exit requested, terminating with exit code {EXIT_FORCED}")
        return EXIT_FORCED

    outcome = engine.outcome
    return 0 if outcome is not None and outcome.success else 1


def configure_logging(config: Config) -> None:
    """配置日志输出：默认 stderr，LOG_DEBUG 模式下写入临时文件。"""
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    if config.log_debug and config.log_file:
        handler: logging.Handler = logging.FileHandler(config.log_file, encoding="utf-8")
        log_level = logging.DEBUG
    else:
        handler = logging.StreamHandler(sys.stderr)
        log_level = logging.INFO
    handler.setFormatter(formatter)

    # root logger（第三方库）保持 WARNING，减少噪音
    logging.basicConfig(level=logging.WARNING, handlers=[handler])
    logging.getLogger("output_streamer").setLevel(log_level)


def main(argv: Sequence[str] | None = None) -> None:
    """主入口点。"""
    parser = build_parser()
    args = parser.parse_args(argv)

    config = get_config()
    try:
        apply_args(config, args)
        spec = spec_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    if spec is None:
        print("Please provide a command to execute using the --cmd flag", file=sys.stderr)
        sys.exit(1)

    if config.log_debug and not config.log_file:
        config.log_file = generate_log_file_path()
    configure_logging(config)
    if config.log_file:
        logger.info(f"Debug log: {config.log_file}")

    sys.exit(asyncio.run(run(config, spec)))


if __name__ == "__main__":
    main()
