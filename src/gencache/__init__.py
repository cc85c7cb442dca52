"""gencache - cache-first, quota-aware orchestration for AI-generated content.

The public entry point is CacheFirstOrchestrator; build a wired instance with
gencache.main.create_orchestrator() or gencache.main.open_runtime().
"""

__version__ = "0.1.0"
