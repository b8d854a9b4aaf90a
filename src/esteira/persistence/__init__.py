from .run_store import RunStore, safe_name

__all__ = ["RunStore", "safe_name"]
