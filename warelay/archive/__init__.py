"""媒体归档模块。"""

from warelay.archive.telegram import ArchiveResult, MediaMetadata, TelegramArchive

__all__ = ["TelegramArchive", "ArchiveResult", "MediaMetadata"]
