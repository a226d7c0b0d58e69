"""LLM orchestration gateway for Socratic legal-education dialogues."""

from socratic_gateway.core import Settings, create_orchestrator
from socratic_gateway.core.llm.models import GenerationResult, Message, RequestContext

__version__ = "0.1.0"

__all__ = ["Settings", "create_orchestrator", "RequestContext", "Message", "GenerationResult"]
