"""readersync - 阅读状态双向同步服务."""

__version__ = "0.1.0"
