"""code-diffusion: staged, multi-process code-generation workflow orchestration."""

__version__ = "0.1.0"
