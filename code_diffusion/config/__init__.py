"""Configuration system for the code-diffusion engine.

Key Components:
    - DiffusionSettings: Main configuration container with YAML loading support
    - NotionConfig: Notion knowledge-base connection
    - SupervisorConfig: Worker concurrency, timeout and launch command
    - RetryConfig: Transient failure retry policy
    - WorkflowConfig: Stage pipeline policy and capability sets
    - ServerConfig: Webhook listener

Example:
    >>> from code_diffusion.config import DiffusionSettings
    >>> settings = DiffusionSettings.from_yaml("code-diffusion.yaml")
    >>> settings.supervisor.max_concurrent_workers
    10
"""

from code_diffusion.config.settings import (
    DiffusionSettings,
    NotionConfig,
    RetryConfig,
    ServerConfig,
    StageCapabilities,
    SupervisorConfig,
    WorkflowConfig,
)

__all__ = [
    "DiffusionSettings",
    "NotionConfig",
    "RetryConfig",
    "ServerConfig",
    "StageCapabilities",
    "SupervisorConfig",
    "WorkflowConfig",
]
