"""
notesync status server
"""
__all__ = [
    "app",
    "logging_utils",
]
