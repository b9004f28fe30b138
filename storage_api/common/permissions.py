from __future__ import annotations


class Permissions:
    STORAGE_READ = "storage:read"
    STORAGE_WRITE = "storage:write"


__all__ = ["Permissions"]
