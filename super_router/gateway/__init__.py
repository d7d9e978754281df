"""
Gateway module for Super Router
HTTP surface and the per-request orchestrator
"""

from super_router.gateway.orchestrator import RequestOrchestrator

__all__ = ["RequestOrchestrator"]
