from app.services.providers.base import (
    FetchResult,
    HistoryResult,
    MessagePage,
    ProviderAttachment,
    ProviderClient,
    ProviderFolder,
    ProviderMessage,
)
from app.services.providers.factory import ProviderFactory, get_provider_client

__all__ = [
    "FetchResult",
    "HistoryResult",
    "MessagePage",
    "ProviderAttachment",
    "ProviderClient",
    "ProviderFactory",
    "ProviderFolder",
    "ProviderMessage",
    "get_provider_client",
]
