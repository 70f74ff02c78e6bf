from .settings import (
    Settings,
    MongoSettings,
    SyncSettings,
    get_settings,
    reload_settings,
    DATABASE_NAME,
    SOURCE_COLLECTION,
    TARGET_COLLECTION,
    CHECKPOINT_COLLECTION,
    RETAINABLE_FIELDS,
)

__all__ = [
    "Settings",
    "MongoSettings",
    "SyncSettings",
    "get_settings",
    "reload_settings",
    "DATABASE_NAME",
    "SOURCE_COLLECTION",
    "TARGET_COLLECTION",
    "CHECKPOINT_COLLECTION",
    "RETAINABLE_FIELDS",
]
