"""market_mirror.core: foundation types, config, and exceptions."""

from market_mirror.core.config import (
    ImportConfig,
    MirrorConfig,
    ProviderConfig,
    StorageConfig,
    load_config,
)
from market_mirror.core.exceptions import (
    ConfigError,
    DataIntegrityError,
    ImportCancelledError,
    IngestionError,
    MarketMirrorError,
    RateLimitError,
    SplitAdjustmentError,
    StorageError,
)
from market_mirror.core.models import (
    ActionName,
    ApiPage,
    ImportAction,
    ImportPhase,
    Notification,
    NotifyCallback,
    ObjectPage,
    RemoteFileRecord,
    RemoteObject,
    SourceName,
    StragglerRequest,
    Ticker,
    TickerTypeSet,
)

__all__ = [
    # Type aliases
    "Ticker",
    "SourceName",
    "NotifyCallback",
    # Enums
    "ActionName",
    "ImportPhase",
    # Import models
    "ImportAction",
    "TickerTypeSet",
    "ApiPage",
    "StragglerRequest",
    "Notification",
    # Object store models
    "RemoteObject",
    "ObjectPage",
    "RemoteFileRecord",
    # Config
    "MirrorConfig",
    "ImportConfig",
    "ProviderConfig",
    "StorageConfig",
    "load_config",
    # Exceptions
    "MarketMirrorError",
    "ConfigError",
    "IngestionError",
    "RateLimitError",
    "StorageError",
    "DataIntegrityError",
    "SplitAdjustmentError",
    "ImportCancelledError",
]
