"""
notesync package
"""
__all__ = [
    "config",
    "logging_utils",
    "cli_paths",
    "errors",
    "timestamps",
    "models",
    "tiles",
    "geometry",
    "countries",
    "storage",
    "watermark",
    "persistence",
    "parser",
    "feed_client",
    "dispatcher",
    "gaps",
    "lock",
    "coordinator",
    "daemon",
]
