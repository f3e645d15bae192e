"""Chance ledger, probability engine, inventory allocation and orchestration."""

from .allocator import InventoryAllocator
from .ledger import (
    ChanceBalance,
    available_chances,
    base_limit,
    is_unlimited,
    load_balance,
    next_available_time,
)
from .orchestrator import (
    DrawOrchestrator,
    DrawSummary,
    check_gates,
    load_rules,
    participate,
    summarize_results,
)
from .probability import (
    DrawOutcome,
    RandomSource,
    any_stock_left,
    available_consolation,
    draw,
    eligible_prizes,
    weighted_choice,
)

__all__ = [
    "ChanceBalance",
    "DrawOrchestrator",
    "DrawOutcome",
    "DrawSummary",
    "InventoryAllocator",
    "RandomSource",
    "any_stock_left",
    "available_chances",
    "available_consolation",
    "base_limit",
    "check_gates",
    "draw",
    "eligible_prizes",
    "is_unlimited",
    "load_balance",
    "load_rules",
    "next_available_time",
    "participate",
    "summarize_results",
    "weighted_choice",
]
