"""output-streamer 入口点。

支持: python -m output_streamer
"""

from .app import main

if __name__ == "__main__":
    main()
