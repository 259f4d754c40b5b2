"""output-streamer - 将命令的实时输出广播到浏览器。

环境变量:
    OSTREAM_HOST / OSTREAM_PORT: 监听地址和端口
    OSTREAM_BUFFER: 回放缓冲区行数 (默认 1000)
    OSTREAM_EXIT_ON_COMPLETE: 命令结束后退出 (默认 false)

用法:
    output-streamer --cmd "make test"
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
