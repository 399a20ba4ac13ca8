"""Resource API gateway: the narrow remote surface the core depends on."""

from setupauth.gateway.base import Brand, ClientKey, OAuthClient, ResourceGateway
from setupauth.gateway.errors import ApiError, ErrorKind, classify, translate
from setupauth.gateway.retry import ApiRetryPolicy, call_with_retry

__all__ = [
    "ApiError",
    "ApiRetryPolicy",
    "Brand",
    "ClientKey",
    "ErrorKind",
    "OAuthClient",
    "ResourceGateway",
    "call_with_retry",
    "classify",
    "translate",
]
