"""Generation provider implementations."""

from generation_broker.jobs.provider.base import (
    GenerationProvider,
    ProviderError,
    ProviderTimeoutError,
)
from generation_broker.jobs.provider.echo_provider import EchoGenerationProvider
from generation_broker.jobs.provider.http_provider import HttpGenerationProvider

__all__ = [
    "EchoGenerationProvider",
    "GenerationProvider",
    "HttpGenerationProvider",
    "ProviderError",
    "ProviderTimeoutError",
]
