"""
Maestro Planner - 浏览器自动化规划服务
"""

__version__ = "0.1.0"
