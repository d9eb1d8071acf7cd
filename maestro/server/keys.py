"""
aiohttp 应用共享对象的键
"""
from aiohttp import web

from maestro.services.scheduler import ActionScheduler
from maestro.transport.registry import ExecutorRegistry
from sequencer.engine import SequencingEngine

SETTINGS_KEY = web.AppKey("settings", object)
ENGINE_KEY = web.AppKey("engine", SequencingEngine)
REGISTRY_KEY = web.AppKey("registry", ExecutorRegistry)
SCHEDULER_KEY = web.AppKey("scheduler", ActionScheduler)
DB_CONTEXT_KEY = web.AppKey("db_context", object)
