"""
AI staging: job orchestration, provider client, prompts and image storage.
"""

from magicstage.staging.object_store import LocalObjectStore, ObjectStore, ObjectStoreError
from magicstage.staging.orchestrator import StagingJobOrchestrator
from magicstage.staging.provider import (
    AIProvider,
    GeminiStagingProvider,
    ProviderError,
    ProviderTimeoutError,
    StagedImage,
)

__all__ = [
    "AIProvider",
    "GeminiStagingProvider",
    "LocalObjectStore",
    "ObjectStore",
    "ObjectStoreError",
    "ProviderError",
    "ProviderTimeoutError",
    "StagedImage",
    "StagingJobOrchestrator",
]
