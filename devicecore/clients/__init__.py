"""Clients for services this runtime depends on."""

from devicecore.clients.metadata import HttpMetadataClient, MemoryMetadataClient, MetadataClient

__all__ = ["HttpMetadataClient", "MemoryMetadataClient", "MetadataClient"]
