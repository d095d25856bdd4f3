from __future__ import annotations

from typing import Any


class CoreSettings:
    """Proxy view for core/integration settings on root Settings."""

    FIELD_NAMES: tuple[str, ...] = (
        "api_prefix",
        "database_url",
        "log_level",
        "marketplace_enabled",
        "marketplace_base_url",
        "marketplace_token_url",
        "marketplace_id",
        "marketplace_refresh_token",
        "marketplace_client_id",
        "marketplace_client_secret",
        "marketplace_seller_id",
        "marketplace_timeout_seconds",
        "price_data_base_url",
        "price_data_api_key",
        "price_data_domain",
        "langfuse_enabled",
        "langfuse_host",
        "langfuse_public_key",
        "langfuse_secret_key",
    )

    def __init__(self, root: Any) -> None:
        object.__setattr__(self, "_root", root)

    def __getattr__(self, name: str) -> Any:
        if name in self.FIELD_NAMES:
            return getattr(self._root, name)
        raise AttributeError(name)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.FIELD_NAMES:
            setattr(self._root, name, value)
            return
        object.__setattr__(self, name, value)
