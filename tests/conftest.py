"""Pytest configuration and shared fixtures."""

import asyncio
import itertools
import random
import sys
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from code_diffusion.config.settings import DiffusionSettings
from code_diffusion.engine.coordinator import FlowCoordinator
from code_diffusion.engine.error_classifier import ErrorClassifier
from code_diffusion.engine.state_machine import StageStateMachine
from code_diffusion.engine.supervisor import WorkerSupervisor
from code_diffusion.providers.memory import InMemoryKnowledgeBase


@pytest.fixture
def settings() -> DiffusionSettings:
    """Settings whose workers exit immediately with code 0."""
    return DiffusionSettings(
        supervisor={
            "worker_command": [sys.executable, "-c", "import sys; sys.exit(0)"],
            "max_concurrent_workers": 10,
            "worker_timeout": 30.0,
            "kill_grace_period": 0.5,
        },
        retry={"max_attempts": 3, "base_delay": 0.0, "max_delay": 0.0, "max_jitter": 0.0},
    )


@pytest.fixture
def knowledge_base() -> InMemoryKnowledgeBase:
    """In-memory knowledge base."""
    return InMemoryKnowledgeBase()


@pytest.fixture
def state_machine() -> StageStateMachine:
    """Empty stage state machine."""
    return StageStateMachine()


@pytest.fixture
def mock_supervisor() -> MagicMock:
    """Supervisor double that hands out sequential worker ids."""
    supervisor = MagicMock(spec=WorkerSupervisor)
    counter = itertools.count(1)

    async def _spawn(request: Any) -> str:
        return f"{request.worker_type}-{next(counter)}"

    supervisor.spawn = AsyncMock(side_effect=_spawn)
    supervisor.kill = MagicMock(return_value=True)
    supervisor.shutdown = AsyncMock()
    supervisor.events = asyncio.Queue()
    supervisor.active_count = 0
    return supervisor


@pytest.fixture
def coordinator(
    settings: DiffusionSettings,
    knowledge_base: InMemoryKnowledgeBase,
    mock_supervisor: MagicMock,
) -> FlowCoordinator:
    """Coordinator wired to the in-memory knowledge base and a supervisor double."""
    return FlowCoordinator(
        settings,
        knowledge_base,
        state_machine=StageStateMachine(),
        supervisor=mock_supervisor,
        classifier=ErrorClassifier(settings.retry, rng=random.Random(7)),
    )


@pytest.fixture
def exploration_payload() -> dict[str, Any]:
    """Valid exploration output, as a worker would report it."""
    return {
        "codebaseAnalysis": {"languages": ["python"], "files": 120},
        "workflowSpec": {"feature": "password reset"},
        "suggestedApproach": "Add a token table and a reset endpoint",
        "estimatedComplexity": "medium",
    }


@pytest.fixture
def planning_payload() -> dict[str, Any]:
    """Valid planning output."""
    return {
        "tasks": [{"id": "t1", "title": "Token model"}, {"id": "t2", "title": "Endpoint"}],
        "dependencies": {"t2": ["t1"]},
        "estimatedDuration": "2h",
    }


@pytest.fixture
def implementation_payload() -> dict[str, Any]:
    """Valid implementation output with passing tests."""
    return {
        "filesModified": ["app/models.py", "app/routes.py"],
        "testsPassed": True,
        "summary": "Added password reset flow",
    }
