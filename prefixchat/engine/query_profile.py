"""Prompt classification used to pick a sampling temperature."""

from __future__ import annotations

from enum import Enum


class QueryType(str, Enum):
    FACTUAL = "factual"
    CONVERSATIONAL = "conversational"
    CREATIVE = "creative"
    TOOL_CALLING = "tool_calling"


_TOOL_MARKERS = ("<|tool_call", "function_call", "available tools")
_FACTUAL_MARKERS = ("what is", "who is", "when did", "how many", "define", "explain")
_CREATIVE_MARKERS = ("imagine", "create", "write a story", "brainstorm")

_TEMPERATURES: dict[QueryType, float] = {
    QueryType.FACTUAL: 0.3,
    QueryType.CONVERSATIONAL: 0.5,
    QueryType.CREATIVE: 0.7,
    QueryType.TOOL_CALLING: 0.2,
}


def detect_query_type(prompt: str) -> QueryType:
    """Classify by lowercase substring rules; tool markers take precedence."""
    lower = prompt.lower()
    if any(m in lower for m in _TOOL_MARKERS):
        return QueryType.TOOL_CALLING
    if any(m in lower for m in _FACTUAL_MARKERS):
        return QueryType.FACTUAL
    if any(m in lower for m in _CREATIVE_MARKERS):
        return QueryType.CREATIVE
    return QueryType.CONVERSATIONAL


def optimal_temperature(query_type: QueryType) -> float:
    return _TEMPERATURES[query_type]
