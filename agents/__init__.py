"""Agents package – test generation, healing and the loop that drives them."""

from agents.base import (
    AttemptHistory,
    Capabilities,
    FixPublisher,
    ModelInvoker,
    ModelResponse,
    SourceFetcher,
)
from agents.eligibility import check_eligibility
from agents.signatures import extract_signatures
from agents.generator import TestGenerator
from agents.healer import AnalysisResult, HealingAnalyzer, HealRequest, decide_status
from agents.loop_controller import LoopController, LoopState, Phase
from agents.pipeline import PreparedUnit, SelfHealPipeline

# LangGraph orchestrator
from agents.heal_loop import HealLoopReport, LoopStatus, run_heal_loop

__all__ = [
    # Capabilities
    "AttemptHistory",
    "Capabilities",
    "FixPublisher",
    "ModelInvoker",
    "ModelResponse",
    "SourceFetcher",
    # Stages
    "check_eligibility",
    "extract_signatures",
    "TestGenerator",
    "AnalysisResult",
    "HealingAnalyzer",
    "HealRequest",
    "decide_status",
    "LoopController",
    "LoopState",
    "Phase",
    "PreparedUnit",
    "SelfHealPipeline",
    # Orchestration
    "HealLoopReport",
    "LoopStatus",
    "run_heal_loop",
]
