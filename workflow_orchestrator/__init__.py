"""Prompt-to-n8n-workflow orchestrator.

discovery -> configuration -> building -> validation -> documentation
"""

__version__ = "0.1.0"
