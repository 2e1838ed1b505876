"""
Integration services for external APIs.
"""
from .identity_provider_service import IdentityProviderGateway, TokenCache
from .retry import RetryStrategy

__all__ = [
    'IdentityProviderGateway',
    'TokenCache',
    'RetryStrategy',
]
