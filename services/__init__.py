"""Service layer utilities."""

from .veo_client import (  # noqa: F401
    AuthError,
    GenerationParams,
    Operation,
    RequestError,
    VeoClient,
    VeoError,
    generate_video,
)

__all__ = [
    "AuthError",
    "GenerationParams",
    "Operation",
    "RequestError",
    "VeoClient",
    "VeoError",
    "generate_video",
]
