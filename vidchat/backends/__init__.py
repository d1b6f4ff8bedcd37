"""
Provider adapters for vidchat.
One adapter per vendor behind the same chat() contract; the orchestrator
looks them up by provider tag and never branches on vendor identity.
"""
from vidchat.backends.base import ChatOptions, ProviderAdapter
from vidchat.backends.primary import PrimaryMultimodalAdapter
from vidchat.backends.secondary import SecondaryTextAdapter
from vidchat.models import PRIMARY, SECONDARY

# Provider tag → adapter class
ADAPTERS: dict[str, type[ProviderAdapter]] = {
    PRIMARY: PrimaryMultimodalAdapter,
    SECONDARY: SecondaryTextAdapter,
}

__all__ = [
    "ADAPTERS",
    "ChatOptions",
    "ProviderAdapter",
    "PrimaryMultimodalAdapter",
    "SecondaryTextAdapter",
]
