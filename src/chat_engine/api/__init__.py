"""
HTTP surface of the chat engine.
"""

from .app import SendMessageRequest, create_app, get_orchestrator

__all__ = ["SendMessageRequest", "create_app", "get_orchestrator"]
