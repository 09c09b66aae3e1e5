"""Knowledge-base providers.

Key Components:
    - KnowledgeBase: Abstract interface used by the flow coordinator
    - NotionKnowledgeBase: Notion REST API implementation
    - InMemoryKnowledgeBase: Process-local implementation for dry runs and tests
"""

from code_diffusion.config.settings import NotionConfig
from code_diffusion.providers.base import KnowledgeBase, TaskRecord
from code_diffusion.providers.memory import InMemoryKnowledgeBase
from code_diffusion.providers.notion import NotionKnowledgeBase


def create_knowledge_base(config: NotionConfig, dry_run: bool = False) -> KnowledgeBase:
    """Return a Notion knowledge base, or an in-memory one for dry runs."""
    if dry_run:
        return InMemoryKnowledgeBase()
    return NotionKnowledgeBase(config)


__all__ = [
    "InMemoryKnowledgeBase",
    "KnowledgeBase",
    "NotionKnowledgeBase",
    "TaskRecord",
    "create_knowledge_base",
]
