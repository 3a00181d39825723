from convertix.core.config import settings

__all__ = ["settings"]
