"""
autolauncher - 按时间表启动场景进程，并保证角色互斥与运行时长上限。
"""

__version__ = "0.1.0"
__logo__ = "⏱"
