"""Local storage: filesystem layout and metadata stores."""

from collect_pipeline.storage.metadata import (
    InMemoryMetadataStore,
    JsonFileMetadataStore,
    MetadataStore,
)

__all__ = ["InMemoryMetadataStore", "JsonFileMetadataStore", "MetadataStore"]
