from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .client import ApiClient
from .core.context import DataContext
from .core.metadata import ApiType, MetadataRegistry

DEFAULT_GRAPH_URL = "https://graph.microsoft.com"
TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    site_url: str
    graph_url: str = DEFAULT_GRAPH_URL
    graph_use_beta: bool = False
    rest_token: str = ""
    graph_token: str = ""
    timeout_seconds: float = 10.0
    page_size: Optional[int] = None

    @property
    def graph_base_url(self) -> str:
        version = "beta" if self.graph_use_beta else "v1.0"
        return f"{self.graph_url.rstrip('/')}/{version}"


def _int_or_none(raw: str) -> Optional[int]:
    raw = raw.strip()
    return int(raw) if raw else None


def load_env_config(
    *, use_dotenv: bool = True, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Load settings from environment variables (optionally via .env)."""
    if use_dotenv:
        load_dotenv()
    env = os.environ if environ is None else environ
    timeout = env.get("ENTITY_BRIDGE_TIMEOUT", "").strip()
    return Settings(
        site_url=env.get("ENTITY_BRIDGE_SITE_URL", "").strip(),
        graph_url=env.get("ENTITY_BRIDGE_GRAPH_URL", "").strip() or DEFAULT_GRAPH_URL,
        graph_use_beta=env.get("ENTITY_BRIDGE_GRAPH_BETA", "").strip().lower()
        in TRUTHY,
        rest_token=env.get("ENTITY_BRIDGE_REST_TOKEN", "").strip(),
        graph_token=env.get("ENTITY_BRIDGE_GRAPH_TOKEN", "").strip(),
        timeout_seconds=float(timeout) if timeout else 10.0,
        page_size=_int_or_none(env.get("ENTITY_BRIDGE_PAGE_SIZE", "")),
    )


def create_clients(settings: Settings, **kwargs) -> dict[ApiType, ApiClient]:
    missing = [
        name
        for name, value in (
            ("ENTITY_BRIDGE_SITE_URL", settings.site_url),
            ("ENTITY_BRIDGE_REST_TOKEN", settings.rest_token),
            ("ENTITY_BRIDGE_GRAPH_TOKEN", settings.graph_token),
        )
        if not value
    ]
    if missing:
        raise ValueError(f"Missing {', '.join(missing)} in environment.")
    return {
        ApiType.REST: ApiClient(
            base_url=settings.site_url,
            api=ApiType.REST,
            token=settings.rest_token,
            timeout_seconds=settings.timeout_seconds,
            **kwargs,
        ),
        ApiType.GRAPH: ApiClient(
            base_url=settings.graph_base_url,
            api=ApiType.GRAPH,
            token=settings.graph_token,
            timeout_seconds=settings.timeout_seconds,
            **kwargs,
        ),
    }


def create_context_from_env(registry: MetadataRegistry, **kwargs) -> DataContext:
    """Create a DataContext with REST and Graph clients from environment variables."""
    settings = load_env_config()
    clients = create_clients(settings, **kwargs)
    return DataContext(registry, clients, default_page_size=settings.page_size)


__all__ = ["Settings", "load_env_config", "create_clients", "create_context_from_env"]
