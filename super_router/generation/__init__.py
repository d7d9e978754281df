"""
Generation module for Super Router
Provider dispatch and media post-processing
"""

from super_router.generation.dispatcher import GenerationDispatcher
from super_router.generation.postprocess import PostProcessor

__all__ = ["GenerationDispatcher", "PostProcessor"]
