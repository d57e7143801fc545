"""
autolauncher 的入口点。允许以 python -m autolauncher 运行。
"""

from autolauncher.cli.commands import app

if __name__ == "__main__":
    app()
