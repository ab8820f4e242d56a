"""
Trade Planning Package.

Signal validation, plan sizing and the approval workflow.
"""

from .approval import ApprovalDecision, ApprovalManager, ApprovalPolicy, TimeoutPolicy
from .config import PlanningConfig
from .planner import TradePlanner, risk_reward_ratio
from .schemas import ExitConditions, ScoringSignal, SignalDecision, Urgency


__all__ = [
    "ApprovalDecision",
    "ApprovalManager",
    "ApprovalPolicy",
    "TimeoutPolicy",
    "PlanningConfig",
    "TradePlanner",
    "risk_reward_ratio",
    "ExitConditions",
    "ScoringSignal",
    "SignalDecision",
    "Urgency",
]
