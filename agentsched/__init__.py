"""
agentsched - Agent 任务调度与资源账本
"""

__version__ = "0.1.0"
