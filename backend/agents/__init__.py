"""Agent capabilities, prompts, and LLM integration.

This module exports the key components needed for agent execution:
- The capability contract (AgentRequest, AgentResult, AgentCapability)
- The registry that maps agent kinds to capabilities
- LLM-backed and deterministic template agents
- LLM client utilities with rate limiting and usage tracking
"""

from agents.base import AgentCapability, AgentRequest, AgentResult
from agents.llm_agent import LLMAgent
from agents.prompts import AGENT_PROFILES, get_system_prompt, output_root
from agents.registry import AgentRegistry, create_agent_registry
from agents.scaffold_agent import ScaffoldAgent
from agents.utils import (
    LLMClient,
    LLMMetrics,
    LLMResponse,
    MockLLMClient,
    extract_json_from_response,
)

__all__ = [
    # Contract
    "AgentCapability",
    "AgentRequest",
    "AgentResult",
    # Registry
    "AgentRegistry",
    "create_agent_registry",
    # Agents
    "LLMAgent",
    "ScaffoldAgent",
    # Prompts
    "AGENT_PROFILES",
    "get_system_prompt",
    "output_root",
    # Utils
    "LLMClient",
    "LLMMetrics",
    "LLMResponse",
    "MockLLMClient",
    "extract_json_from_response",
]
