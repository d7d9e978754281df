"""
Storage module for Super Router
Uploads generated media to Supabase Storage
"""

from super_router.storage.artifact_store import ArtifactStore, artifact_key, get_artifact_store

__all__ = ["ArtifactStore", "artifact_key", "get_artifact_store"]
