"""
Orchestration: the agentic loop, the tool dispatcher it shares with the
sampling processor, and the sampling processor itself.
"""

from switchboard.agents.dispatch import ToolDispatcher
from switchboard.agents.loop import AgenticLoop, RunState
from switchboard.agents.sampling import SamplingDecision, SamplingProcessor

__all__ = ["AgenticLoop", "RunState", "SamplingDecision", "SamplingProcessor", "ToolDispatcher"]
