from .memories import require_memory_api_key, router as memories_router

__all__ = ["memories_router", "require_memory_api_key"]
